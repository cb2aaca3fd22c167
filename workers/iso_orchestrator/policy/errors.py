"""
Failure taxonomy for the build orchestrator.

Every terminal failure carries a ``FailureReason`` so callers can tell a bad
request from an overloaded system from a hung worker.  Synchronous rejections
(``validation``, ``capacity``, ``quota``) never create a build; the remaining
reasons are recorded on the build's ``error`` field.
"""
from __future__ import annotations

from enum import Enum
from typing import Optional


class FailureReason(str, Enum):
    """Machine-readable failure categories."""

    # Synchronous, no build created
    VALIDATION = "validation"
    CAPACITY = "capacity"
    QUOTA = "quota"

    # Recorded on a terminal build
    PROVISIONING = "provisioning"
    EXECUTION = "execution"
    STALLED = "stalled"
    TIMED_OUT = "timed_out"
    DELIVERY = "delivery"
    CANCELLED = "cancelled"


# =============================================================================
# Exceptions
# =============================================================================

class OrchestratorError(Exception):
    """Base class for all orchestrator errors."""

    reason: Optional[FailureReason] = None

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_detail(self) -> dict:
        return {
            "reason": self.reason.value if self.reason else None,
            "message": self.message,
        }


class ValidationFailed(OrchestratorError):
    """Malformed or unknown identifiers in a build request."""

    reason = FailureReason.VALIDATION

    def __init__(self, message: str, field: Optional[str] = None):
        super().__init__(message)
        self.field = field

    def to_detail(self) -> dict:
        detail = super().to_detail()
        if self.field:
            detail["field"] = self.field
        return detail


class AdmissionRejected(OrchestratorError):
    """Concurrency ceiling reached or requester over quota."""

    def __init__(self, reason: FailureReason, message: str, retry_after: Optional[int] = None):
        super().__init__(message)
        self.reason = reason
        self.retry_after = retry_after

    def to_detail(self) -> dict:
        detail = super().to_detail()
        if self.retry_after is not None:
            detail["retry_after"] = self.retry_after
        return detail


class ProvisioningFailed(OrchestratorError):
    """The compute API could not create a worker."""

    reason = FailureReason.PROVISIONING


class BuildNotFound(OrchestratorError):
    """No build record for the id (never existed or already purged)."""

    def __init__(self, build_id: str):
        super().__init__(f"Build {build_id} not found")
        self.build_id = build_id


class BuildNotCompleted(OrchestratorError):
    """Download requested for a build that has not completed."""

    def __init__(self, build_id: str, status: str):
        super().__init__(f"Build {build_id} is not completed (status={status})")
        self.build_id = build_id
        self.status = status

    def to_detail(self) -> dict:
        detail = super().to_detail()
        detail["status"] = self.status
        return detail


class ArtifactUnavailable(OrchestratorError):
    """The artifact of a completed build is no longer readable."""

    reason = FailureReason.DELIVERY


class ConcurrentUpdate(OrchestratorError):
    """Compare-and-swap retries exhausted for a build record."""
