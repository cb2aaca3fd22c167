"""Pydantic models for the Isoforge API."""

from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, Field

from iso_orchestrator.io.schema import BuildConfig, BuildError, BuildRecord, BuildStatus


class BuildRequest(BaseModel):
    """Request to build a custom installation image."""
    services: List[str] = Field(..., description="Service identifiers; dependencies are added automatically")
    models: List[str] = Field(default_factory=list, description="Model identifiers (name:tag)")
    gpu: bool = Field(default=False, description="Build with GPU support")
    requester: Optional[str] = Field(default=None, description="Requester identity used for quotas")
    image_name: Optional[str] = Field(default=None, description="Output image name (without .iso)")


class BuildSubmitResponse(BaseModel):
    """Response after submitting a build."""
    build_id: str
    status: BuildStatus
    estimated_minutes: int
    services: List[str]
    models: List[str]
    message: str = "Build queued"


class BuildStatusResponse(BaseModel):
    """Full build state as seen by a poller."""
    build_id: str
    status: BuildStatus
    progress: int
    stage: str
    logs: List[str]
    requested_config: BuildConfig
    artifact_ref: Optional[str] = None
    error: Optional[BuildError] = None
    estimated_minutes: int
    created_at: datetime
    updated_at: datetime
    finished_at: Optional[datetime] = None

    @classmethod
    def from_record(cls, record: BuildRecord, status: Optional[BuildStatus] = None) -> "BuildStatusResponse":
        return cls(
            build_id=record.build_id,
            status=status or record.status,
            progress=record.progress,
            stage=record.stage,
            logs=record.logs,
            requested_config=record.requested_config,
            artifact_ref=record.artifact_ref,
            error=record.error,
            estimated_minutes=record.estimated_minutes,
            created_at=record.created_at,
            updated_at=record.updated_at,
            finished_at=record.finished_at,
        )


class BuildListResponse(BaseModel):
    """Paginated list of builds."""
    builds: List[BuildStatusResponse]
    total: int
    offset: int
    limit: int


class DownloadResponse(BaseModel):
    """Presigned download grant."""
    build_id: str
    download_url: str
    artifact_ref: str
    size_bytes: int
    expires_at: datetime
    expires_in_seconds: int


class ServiceEntry(BaseModel):
    name: str
    display: str
    description: str
    category: str
    size_mb: int
    dependencies: List[str]
    required: bool


class ServiceCatalogResponse(BaseModel):
    version: str
    categories: dict[str, str]
    services: List[ServiceEntry]


class ModelEntry(BaseModel):
    name: str
    display: str
    description: str
    size_gb: float


class ModelCatalogResponse(BaseModel):
    version: str
    models: List[ModelEntry]


class LimitsResponse(BaseModel):
    """Admission limits and timers in effect."""
    max_concurrent_builds: int
    active_builds: int
    builds_per_hour: int
    builds_per_day: int
    max_services_per_build: int
    max_models_per_build: int
    stall_seconds: int
    build_timeout_seconds: int
    signed_url_ttl_seconds: int
    retention_hours: int


class HealthResponse(BaseModel):
    """Health check response."""
    status: str
    redis_ok: bool
    storage_ok: bool
    version: str
