"""
Application configuration
"""
from pydantic_settings import BaseSettings

from iso_orchestrator.policy.profile import OrchestratorProfile, QuotaWindow


class Settings(BaseSettings):
    """Application settings"""

    # API
    API_HOST: str = "0.0.0.0"
    API_PORT: int = 8080
    API_TITLE: str = "Isoforge API"
    API_VERSION: str = "1.0.0"
    API_KEY: str | None = None
    REQUIRE_API_KEY: bool = False
    CORS_ORIGINS: list[str] = ["*"]
    LOG_LEVEL: str = "INFO"

    # Redis (empty URL -> in-memory repository, single process only)
    REDIS_URL: str = "redis://redis:6379/0"
    REDIS_KEY_PREFIX: str = "isoforge"

    # Object storage (S3 / MinIO)
    S3_ENDPOINT: str = ""
    S3_ACCESS_KEY: str | None = None
    S3_SECRET_KEY: str | None = None
    S3_REGION: str = "us-east-1"
    DOWNLOADS_BUCKET: str = "isoforge-downloads"
    STATUS_PREFIX: str = "build-status"
    ARTIFACT_PREFIX: str = "images"

    # Compute (EC2)
    EC2_REGION: str = "us-west-2"
    WORKER_AMI_ID: str = ""
    WORKER_INSTANCE_TYPE: str = "m6i.4xlarge"
    WORKER_GPU_INSTANCE_TYPE: str = "g5.4xlarge"
    WORKER_DISK_GB: int = 500
    WORKER_SUBNET_ID: str | None = None
    WORKER_SECURITY_GROUP_IDS: list[str] = []
    WORKER_INSTANCE_PROFILE: str | None = None
    ENVIRONMENT: str = "development"
    PIPELINE_COMMAND: str = ""
    PIPELINE_REPO_URL: str = "https://github.com/isoforge/image-pipeline.git"
    PIPELINE_REF: str = "main"
    COMPUTE_CONNECT_TIMEOUT: float = 10.0
    COMPUTE_READ_TIMEOUT: float = 60.0

    # Limits
    MAX_CONCURRENT_BUILDS: int = 3
    MAX_SERVICES_PER_BUILD: int = 50
    MAX_MODELS_PER_BUILD: int = 10
    BUILDS_PER_HOUR: int = 3
    BUILDS_PER_DAY: int = 5
    DEFAULT_IMAGE_NAME: str = "ubuntu-24.04.3-homelab-custom"

    # Timers
    SWEEP_INTERVAL_SECONDS: float = 10.0
    STALL_SECONDS: int = 30 * 60
    BUILD_TIMEOUT_SECONDS: int = 4 * 60 * 60
    ARTIFACT_GRACE_SECONDS: int = 60
    WORKER_VISIBILITY_SECONDS: int = 120
    SIGNED_URL_TTL_SECONDS: int = 3600
    RETENTION_HOURS: int = 24
    PURGE_INTERVAL_SECONDS: float = 3600.0

    LOG_CAP: int = 200
    CAS_RETRIES: int = 10
    RUN_SWEEPER: bool = True

    def profile(self) -> OrchestratorProfile:
        """Core limits and timers derived from these settings."""
        return OrchestratorProfile.v1(
            max_concurrent_builds=self.MAX_CONCURRENT_BUILDS,
            quota_windows=(
                QuotaWindow(limit=self.BUILDS_PER_HOUR, seconds=3600),
                QuotaWindow(limit=self.BUILDS_PER_DAY, seconds=86400),
            ),
            max_services_per_build=self.MAX_SERVICES_PER_BUILD,
            max_models_per_build=self.MAX_MODELS_PER_BUILD,
            default_image_name=self.DEFAULT_IMAGE_NAME,
            stall_seconds=self.STALL_SECONDS,
            build_timeout_seconds=self.BUILD_TIMEOUT_SECONDS,
            artifact_grace_seconds=self.ARTIFACT_GRACE_SECONDS,
            worker_visibility_seconds=self.WORKER_VISIBILITY_SECONDS,
            signed_url_ttl_seconds=self.SIGNED_URL_TTL_SECONDS,
            retention_seconds=self.RETENTION_HOURS * 3600,
            log_cap=self.LOG_CAP,
            cas_retries=self.CAS_RETRIES,
            status_prefix=self.STATUS_PREFIX,
            artifact_prefix=self.ARTIFACT_PREFIX,
        )

    class Config:
        env_file = ".env"
        case_sensitive = True


settings = Settings()
