"""Retention purge of finished builds, their images and status objects."""
from __future__ import annotations

import logging
from datetime import datetime, timedelta

from iso_orchestrator.core.provisioner import WorkerProvisioner
from iso_orchestrator.io.artifact_store import ArtifactStore
from iso_orchestrator.io.repository import BuildRepository
from iso_orchestrator.io.status_channel import StatusChannel
from iso_orchestrator.policy.profile import OrchestratorProfile

logger = logging.getLogger(__name__)


class RetentionPurger:

    def __init__(
        self,
        repository: BuildRepository,
        artifact_store: ArtifactStore,
        status_channel: StatusChannel,
        provisioner: WorkerProvisioner,
        profile: OrchestratorProfile,
    ):
        self.repository = repository
        self.artifact_store = artifact_store
        self.status_channel = status_channel
        self.provisioner = provisioner
        self.profile = profile

    def purge(self, now: datetime) -> list[str]:
        """Delete every terminal build finished before the retention cutoff.

        Returns the purged build ids.
        """
        cutoff = now - timedelta(seconds=self.profile.retention_seconds)
        purged = []
        for build_id in self.repository.finished_before(cutoff):
            record = self.repository.get(build_id)
            if record is not None:
                if not record.is_terminal:
                    continue
                if record.worker_ref:
                    # A release that never got recorded
                    self.provisioner.terminate(record.worker_ref)
                if record.artifact_ref:
                    self.artifact_store.delete(record.artifact_ref)
            self.status_channel.delete(build_id)
            self.repository.delete(build_id)
            purged.append(build_id)
            logger.info("Purged build %s", build_id)

        if purged:
            logger.info("Retention purge removed %d build(s) finished before %s", len(purged), cutoff.isoformat())
        else:
            logger.debug("Retention purge: nothing to remove")
        return purged
