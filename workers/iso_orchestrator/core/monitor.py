"""
Stall and timeout monitor.

Independent of worker cooperation: a build that stops reporting, or simply
runs too long, is failed and its worker released.  The absolute build
timeout takes precedence over the stall check.
"""
from __future__ import annotations

import logging
from datetime import datetime
from typing import Optional

from iso_orchestrator.core.cleanup import CleanupManager
from iso_orchestrator.core.state_machine import failure_mutator
from iso_orchestrator.io.repository import BuildRepository
from iso_orchestrator.io.schema import BuildRecord
from iso_orchestrator.policy.errors import FailureReason
from iso_orchestrator.policy.profile import OrchestratorProfile

logger = logging.getLogger(__name__)


def _format_duration(seconds: int) -> str:
    if seconds % 3600 == 0:
        return f"{seconds // 3600}h"
    if seconds % 60 == 0:
        return f"{seconds // 60} minutes"
    return f"{seconds} seconds"


def expiry_reason(record: BuildRecord, now: datetime, profile: OrchestratorProfile):
    """Return ``(reason, message)`` if *record* has expired, else ``None``."""
    if record.is_terminal:
        return None
    if (now - record.created_at).total_seconds() > profile.build_timeout_seconds:
        return (
            FailureReason.TIMED_OUT,
            f"Build exceeded maximum duration of {_format_duration(profile.build_timeout_seconds)}",
        )
    if (now - record.last_progress_at).total_seconds() > profile.stall_seconds:
        return (
            FailureReason.STALLED,
            f"No progress reported for {_format_duration(profile.stall_seconds)}",
        )
    return None


class StallMonitor:

    def __init__(
        self,
        repository: BuildRepository,
        cleanup: CleanupManager,
        profile: OrchestratorProfile,
    ):
        self.repository = repository
        self.cleanup = cleanup
        self.profile = profile

    def check(self, build_id: str, now: datetime) -> Optional[BuildRecord]:
        """Fail *build_id* if it has stalled or timed out, then clean up."""
        record = self.repository.get(build_id)
        if record is None:
            return None
        if expiry_reason(record, now, self.profile) is None:
            return record

        def _mutate(current: BuildRecord) -> Optional[BuildRecord]:
            # Re-evaluated against the fresh copy; a worker report may have landed.
            verdict = expiry_reason(current, now, self.profile)
            if verdict is None:
                return None
            reason, message = verdict
            return failure_mutator(reason, message, now, self.profile.log_cap)(current)

        record, changed = self.repository.update(build_id, _mutate)
        if changed:
            logger.warning(
                "Build %s failed (%s): %s",
                build_id, record.error.reason.value, record.error.message,
            )
            self.cleanup.cleanup(build_id, now)
        return record
