"""
Profile descriptor for the orchestrator.

Frozen dataclass with every limit and timer the core consults.  The API
builds one from its settings (``Settings.profile()``); tests build their own
with ``OrchestratorProfile.v1(...)`` overrides.
"""
from __future__ import annotations

from dataclasses import dataclass, replace


@dataclass(frozen=True)
class QuotaWindow:
    """At most ``limit`` admissions per requester within ``seconds``."""

    limit: int
    seconds: int


@dataclass(frozen=True)
class OrchestratorProfile:
    """Limits, timers and naming used by the orchestration core."""

    profile_id: str

    # Admission
    max_concurrent_builds: int = 3
    quota_windows: tuple[QuotaWindow, ...] = (
        QuotaWindow(limit=3, seconds=3600),
        QuotaWindow(limit=5, seconds=86400),
    )

    # Request limits
    max_services_per_build: int = 50
    max_models_per_build: int = 10
    default_image_name: str = "ubuntu-24.04.3-homelab-custom"

    # Timers (seconds)
    stall_seconds: int = 30 * 60
    build_timeout_seconds: int = 4 * 60 * 60
    artifact_grace_seconds: int = 60
    worker_visibility_seconds: int = 120
    signed_url_ttl_seconds: int = 3600
    retention_seconds: int = 24 * 60 * 60

    # Record bounds
    log_cap: int = 200
    cas_retries: int = 10

    # Object naming
    status_prefix: str = "build-status"
    artifact_prefix: str = "images"

    # Worker-side download parallelism clamp
    parallel_floor: int = 2
    parallel_ceiling: int = 8

    @classmethod
    def v1(cls, **overrides) -> OrchestratorProfile:
        """The default profile, optionally with overrides."""
        return replace(cls(profile_id="iso-orchestrator-v1"), **overrides)
