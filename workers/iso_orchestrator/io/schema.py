"""
Record schemas for the orchestrator.

``BuildRecord`` is the single persisted entity; ``StatusReport`` is what a
worker writes to the status channel.  Both serialize to JSON through
pydantic so the repository and the channel never hand-roll encoding.
"""
from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field, field_validator

from iso_orchestrator.policy.errors import FailureReason


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# =============================================================================
# Enums
# =============================================================================

class BuildStatus(str, Enum):
    """Build lifecycle states."""
    QUEUED = "queued"
    PROVISIONING = "provisioning"
    PREPARING = "preparing"
    BUILDING = "building"
    UPLOADING = "uploading"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset({BuildStatus.COMPLETED, BuildStatus.FAILED, BuildStatus.CANCELLED})


# =============================================================================
# Build record
# =============================================================================

class BuildConfig(BaseModel):
    """Normalized, closed build configuration (validator output)."""
    services: List[str]
    models: List[str] = Field(default_factory=list)
    gpu: bool = False
    requester: str
    image_name: str


class BuildError(BaseModel):
    """Structured failure reason on a failed/cancelled build."""
    reason: FailureReason
    message: str


class BuildRecord(BaseModel):
    """The central build entity, as stored in the repository."""
    build_id: str
    status: BuildStatus = BuildStatus.QUEUED
    requested_config: BuildConfig
    progress: int = Field(default=0, ge=0, le=100)
    stage: str = "queued"
    logs: List[str] = Field(default_factory=list)
    worker_ref: Optional[str] = None
    worker_bound_at: Optional[datetime] = None
    released_worker_ref: Optional[str] = None
    artifact_ref: Optional[str] = None
    error: Optional[BuildError] = None
    estimated_minutes: int = 0
    created_at: datetime = Field(default_factory=utcnow)
    last_progress_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    finished_at: Optional[datetime] = None
    completion_seen_at: Optional[datetime] = None
    version: int = 0

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    def append_log(self, line: str, cap: int) -> None:
        """Append a log line, evicting the oldest entries past *cap*."""
        self.logs.append(line)
        overflow = len(self.logs) - cap
        if overflow > 0:
            del self.logs[:overflow]


# =============================================================================
# Status channel record
# =============================================================================

class StatusReport(BaseModel):
    """A worker-written status record (one object per build, overwritten)."""
    stage: str
    progress: int = 0
    message: str = ""
    timestamp: datetime = Field(default_factory=utcnow)
    artifact: Optional[str] = None

    @field_validator("progress", mode="before")
    @classmethod
    def clamp_progress(cls, v):
        """Workers are untrusted: coerce and clamp instead of rejecting."""
        try:
            value = int(float(v))
        except (TypeError, ValueError):
            return 0
        return max(0, min(100, value))

    @field_validator("timestamp")
    @classmethod
    def ensure_tz(cls, v: datetime) -> datetime:
        if v.tzinfo is None:
            return v.replace(tzinfo=timezone.utc)
        return v


# =============================================================================
# Delivery
# =============================================================================

class DownloadGrant(BaseModel):
    """A presigned, expiring access URL for a completed build's image."""
    build_id: str
    download_url: str
    artifact_ref: str
    size_bytes: int
    expires_at: datetime
    expires_in_seconds: int
