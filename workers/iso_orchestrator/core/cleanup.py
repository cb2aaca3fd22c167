"""
Cleanup manager.

Releases the worker bound to a build.  Safe to call any number of times, from
any process, in any state: each invocation issues exactly one terminate for
the build's worker (current or last released), then moves ``worker_ref`` to
``released_worker_ref`` without waiting for the compute API to confirm.
Status is never changed here.
"""
from __future__ import annotations

import logging
from datetime import datetime
from typing import Optional

from iso_orchestrator.core.provisioner import WorkerProvisioner
from iso_orchestrator.io.repository import BuildRepository
from iso_orchestrator.io.schema import BuildRecord
from iso_orchestrator.io.status_channel import StatusChannel

logger = logging.getLogger(__name__)


class CleanupManager:

    def __init__(
        self,
        repository: BuildRepository,
        provisioner: WorkerProvisioner,
        status_channel: StatusChannel,
    ):
        self.repository = repository
        self.provisioner = provisioner
        self.status_channel = status_channel

    def cleanup(self, build_id: str, now: datetime) -> Optional[BuildRecord]:
        """Tear down whatever worker *build_id* holds.  Never raises."""
        try:
            return self._cleanup(build_id, now)
        except Exception as exc:
            logger.error("Cleanup of build %s failed: %s", build_id, exc, exc_info=True)
            return None

    def _cleanup(self, build_id: str, now: datetime) -> Optional[BuildRecord]:
        record = self.repository.get(build_id)
        if record is None:
            logger.debug("Cleanup: build %s no longer exists", build_id)
            return None

        target = record.worker_ref or record.released_worker_ref
        if target:
            self.provisioner.terminate(target)

        if record.worker_ref:
            def _release(current: BuildRecord) -> Optional[BuildRecord]:
                if current.worker_ref is None:
                    return None
                current.released_worker_ref = current.worker_ref
                current.worker_ref = None
                current.updated_at = now
                return current

            record, changed = self.repository.update(build_id, _release)
            if changed:
                logger.info("Released worker %s of build %s", record.released_worker_ref, build_id)

        if record.is_terminal:
            self.status_channel.delete(build_id)
        return record
