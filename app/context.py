"""Shared application context attached to the FastAPI app."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

from app.config import Settings
from iso_orchestrator.core.provisioner import ComputeConfig, WorkerProvisioner, build_ec2_client
from iso_orchestrator.core.service import Orchestrator
from iso_orchestrator.io.artifact_store import ArtifactStore
from iso_orchestrator.io.repository import (
    BuildRepository,
    InMemoryBuildRepository,
    RedisBuildRepository,
)
from iso_orchestrator.io.s3 import build_s3_client
from iso_orchestrator.io.startup import default_pipeline_command
from iso_orchestrator.io.status_channel import StatusChannel

logger = logging.getLogger(__name__)


@dataclass
class OrchestratorContext:
    """Runtime dependencies kept on ``app.state`` for easy access."""

    settings: Settings
    orchestrator: Orchestrator
    repository: BuildRepository
    status_channel: StatusChannel

    def close(self) -> None:
        """Release external resources."""
        if isinstance(self.repository, RedisBuildRepository):
            self.repository.close()


def build_repository(settings: Settings) -> BuildRepository:
    if not settings.REDIS_URL:
        logger.warning("REDIS_URL is empty; using in-memory build repository (single process only)")
        return InMemoryBuildRepository()
    return RedisBuildRepository.from_url(
        settings.REDIS_URL,
        prefix=settings.REDIS_KEY_PREFIX,
        cas_retries=settings.CAS_RETRIES,
    )


def compute_config(settings: Settings) -> ComputeConfig:
    return ComputeConfig(
        region=settings.EC2_REGION,
        ami_id=settings.WORKER_AMI_ID,
        instance_type=settings.WORKER_INSTANCE_TYPE,
        gpu_instance_type=settings.WORKER_GPU_INSTANCE_TYPE,
        root_volume_gb=settings.WORKER_DISK_GB,
        subnet_id=settings.WORKER_SUBNET_ID,
        security_group_ids=list(settings.WORKER_SECURITY_GROUP_IDS),
        instance_profile=settings.WORKER_INSTANCE_PROFILE,
        environment=settings.ENVIRONMENT,
        connect_timeout=settings.COMPUTE_CONNECT_TIMEOUT,
        read_timeout=settings.COMPUTE_READ_TIMEOUT,
    )


def build_context(
    settings: Settings,
    repository: Optional[BuildRepository] = None,
    provisioner: Optional[WorkerProvisioner] = None,
    s3_client=None,
) -> OrchestratorContext:
    """Wire an orchestrator from settings; explicit arguments override the defaults."""
    profile = settings.profile()

    if s3_client is None:
        s3_client = build_s3_client(
            endpoint_url=settings.S3_ENDPOINT,
            access_key=settings.S3_ACCESS_KEY,
            secret_key=settings.S3_SECRET_KEY,
            region=settings.S3_REGION,
        )
    status_channel = StatusChannel(s3_client, settings.DOWNLOADS_BUCKET, profile.status_prefix)
    artifact_store = ArtifactStore(s3_client, settings.DOWNLOADS_BUCKET, profile.artifact_prefix)

    if repository is None:
        repository = build_repository(settings)
    if provisioner is None:
        config = compute_config(settings)
        provisioner = WorkerProvisioner(build_ec2_client(config), config)

    orchestrator = Orchestrator(
        repository=repository,
        provisioner=provisioner,
        status_channel=status_channel,
        artifact_store=artifact_store,
        profile=profile,
        pipeline_command=settings.PIPELINE_COMMAND
        or default_pipeline_command(settings.PIPELINE_REPO_URL, settings.PIPELINE_REF),
        s3_endpoint=settings.S3_ENDPOINT,
    )
    return OrchestratorContext(
        settings=settings,
        orchestrator=orchestrator,
        repository=repository,
        status_channel=status_channel,
    )
