"""
Admission controller.

``submit`` validates a request, estimates its duration and stores it as
``queued`` in one atomic repository step that also enforces the concurrency
ceiling and per-requester quotas.  A rejected request leaves no trace.

``claim`` is the dispatcher's half: a compare-and-swap from ``queued`` to
``provisioning`` that exactly one caller wins.
"""
from __future__ import annotations

import logging
import uuid
from datetime import datetime
from typing import Optional, Sequence

from iso_orchestrator.core.state_machine import advance
from iso_orchestrator.core.validator import estimate_minutes, validate_request
from iso_orchestrator.io.repository import BuildRepository
from iso_orchestrator.io.schema import BuildRecord, BuildStatus
from iso_orchestrator.policy.catalog import Catalog
from iso_orchestrator.policy.profile import OrchestratorProfile

logger = logging.getLogger(__name__)


class AdmissionController:

    def __init__(
        self,
        repository: BuildRepository,
        catalog: Catalog,
        profile: OrchestratorProfile,
    ):
        self.repository = repository
        self.catalog = catalog
        self.profile = profile

    def submit(
        self,
        *,
        services: Sequence,
        models: Optional[Sequence],
        gpu: bool,
        requester: str,
        image_name: Optional[str],
        now: datetime,
    ) -> BuildRecord:
        """Validate and admit a build request.

        Raises:
            ValidationFailed: malformed or unknown request
            AdmissionRejected: ceiling reached or requester over quota
        """
        config = validate_request(
            services=services,
            models=models,
            gpu=gpu,
            requester=requester,
            image_name=image_name,
            catalog=self.catalog,
            profile=self.profile,
        )
        estimate = estimate_minutes(config, self.catalog)

        record = BuildRecord(
            build_id=str(uuid.uuid4()),
            requested_config=config,
            estimated_minutes=estimate,
            created_at=now,
            last_progress_at=now,
            updated_at=now,
        )
        record.append_log(
            f"[queued] Build accepted: {len(config.services)} services, "
            f"{len(config.models)} models, estimated {estimate} minutes",
            self.profile.log_cap,
        )

        self.repository.admit(
            record,
            max_active=self.profile.max_concurrent_builds,
            quota_windows=self.profile.quota_windows,
            now=now,
        )
        logger.info(
            "Admitted build %s for %s (%d services, %d models)",
            record.build_id, config.requester, len(config.services), len(config.models),
        )
        return record

    def claim(self, build_id: str, now: datetime) -> Optional[BuildRecord]:
        """Move a queued build to ``provisioning``.

        Returns the claimed record, or ``None`` if the build was not queued
        (already claimed elsewhere, cancelled, ...).
        """

        def _mutate(current: BuildRecord) -> Optional[BuildRecord]:
            if current.status != BuildStatus.QUEUED:
                return None
            advance(current, BuildStatus.PROVISIONING, now)
            current.stage = BuildStatus.PROVISIONING.value
            current.append_log("[provisioning] Creating build worker", self.profile.log_cap)
            return current

        record, changed = self.repository.update(build_id, _mutate)
        if not changed:
            logger.debug("Build %s not claimable (status=%s)", build_id, record.status.value)
            return None
        logger.info("Claimed build %s for provisioning", build_id)
        return record
