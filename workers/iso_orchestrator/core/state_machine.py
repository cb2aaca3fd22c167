"""
Build state machine.

Forward order on the happy path::

    queued → provisioning → preparing → building → uploading → completed

``failed`` and ``cancelled`` are reachable from every non-terminal state.
Forward skips are allowed (a worker's first visible report may already be in
the building stage); backward moves and moves out of a terminal state are not.
"""
from __future__ import annotations

from datetime import datetime
from typing import Callable, Optional

from iso_orchestrator.io.schema import BuildError, BuildRecord, BuildStatus
from iso_orchestrator.policy.errors import FailureReason

FORWARD_ORDER: tuple[BuildStatus, ...] = (
    BuildStatus.QUEUED,
    BuildStatus.PROVISIONING,
    BuildStatus.PREPARING,
    BuildStatus.BUILDING,
    BuildStatus.UPLOADING,
    BuildStatus.COMPLETED,
)

_RANK = {status: i for i, status in enumerate(FORWARD_ORDER)}

NON_TERMINAL: tuple[BuildStatus, ...] = FORWARD_ORDER[:-1]


class IllegalTransition(ValueError):
    """Raised when a transition would violate the state machine."""

    def __init__(self, current: BuildStatus, target: BuildStatus):
        super().__init__(f"Illegal transition {current.value} -> {target.value}")
        self.current = current
        self.target = target


def can_transition(current: BuildStatus, target: BuildStatus) -> bool:
    if current.is_terminal:
        return False
    if target in (BuildStatus.FAILED, BuildStatus.CANCELLED):
        return True
    return _RANK[target] > _RANK[current]


def advance(record: BuildRecord, target: BuildStatus, now: datetime) -> BuildRecord:
    """Move *record* forward to *target* (mutates and returns it)."""
    if not can_transition(record.status, target):
        raise IllegalTransition(record.status, target)
    record.status = target
    record.updated_at = now
    if target.is_terminal:
        record.finished_at = now
    return record


def fail(
    record: BuildRecord,
    reason: FailureReason,
    message: str,
    now: datetime,
) -> BuildRecord:
    """Terminal escape: ``failed`` (or ``cancelled`` for that reason)."""
    target = BuildStatus.CANCELLED if reason == FailureReason.CANCELLED else BuildStatus.FAILED
    advance(record, target, now)
    record.error = BuildError(reason=reason, message=message)
    record.stage = target.value
    return record


def later_of(current: BuildStatus, proposed: BuildStatus) -> Optional[BuildStatus]:
    """Return *proposed* if it is a forward move from *current*, else ``None``."""
    if current.is_terminal or proposed.is_terminal:
        return None
    return proposed if _RANK[proposed] > _RANK[current] else None


def failure_mutator(
    reason: FailureReason,
    message: str,
    now: datetime,
    log_cap: int,
) -> Callable[[BuildRecord], Optional[BuildRecord]]:
    """Repository mutator that fails a build unless it is already terminal."""

    def _mutate(record: BuildRecord) -> Optional[BuildRecord]:
        if record.is_terminal:
            return None
        fail(record, reason, message, now)
        record.append_log(f"[{record.stage}] {message}", log_cap)
        return record

    return _mutate
