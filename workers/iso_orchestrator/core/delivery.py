"""Artifact delivery: presigned, expiring download grants for completed builds."""
from __future__ import annotations

import logging
from datetime import datetime

from iso_orchestrator.io.artifact_store import ArtifactStore
from iso_orchestrator.io.repository import BuildRepository
from iso_orchestrator.io.schema import BuildStatus, DownloadGrant
from iso_orchestrator.policy.errors import ArtifactUnavailable, BuildNotCompleted, BuildNotFound
from iso_orchestrator.policy.profile import OrchestratorProfile

logger = logging.getLogger(__name__)


class ArtifactDelivery:

    def __init__(
        self,
        repository: BuildRepository,
        artifact_store: ArtifactStore,
        profile: OrchestratorProfile,
    ):
        self.repository = repository
        self.artifact_store = artifact_store
        self.profile = profile

    def grant(self, build_id: str, now: datetime) -> DownloadGrant:
        """Issue a fresh download grant.

        Raises:
            BuildNotFound: unknown or purged build
            BuildNotCompleted: build has not reached ``completed``
            ArtifactUnavailable: completed, but the image is gone from the
                store (the build stays ``completed``)
        """
        record = self.repository.get(build_id)
        if record is None:
            raise BuildNotFound(build_id)
        if record.status != BuildStatus.COMPLETED or not record.artifact_ref:
            raise BuildNotCompleted(build_id, record.status.value)

        metadata = self.artifact_store.get_metadata(record.artifact_ref)
        if metadata is None:
            logger.warning("Artifact %s of completed build %s is gone", record.artifact_ref, build_id)
            raise ArtifactUnavailable(f"Artifact for build {build_id} is no longer available")

        ttl = self.profile.signed_url_ttl_seconds
        url, expires_at = self.artifact_store.presign(record.artifact_ref, ttl, now)
        logger.info("Issued download grant for build %s (expires %s)", build_id, expires_at.isoformat())
        return DownloadGrant(
            build_id=build_id,
            download_url=url,
            artifact_ref=record.artifact_ref,
            size_bytes=metadata["size"],
            expires_at=expires_at,
            expires_in_seconds=ttl,
        )
