"""
Orchestrator facade.

Wires validator, admission, provisioner, ingestion, monitor, cleanup,
delivery and retention around one repository, and exposes the external
operations.  Every operation reads the clock once and passes ``now`` down,
so tests drive time explicitly.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Optional, Sequence

from iso_orchestrator.core.admission import AdmissionController
from iso_orchestrator.core.cleanup import CleanupManager
from iso_orchestrator.core.delivery import ArtifactDelivery
from iso_orchestrator.core.ingest import StatusIngestor
from iso_orchestrator.core.monitor import StallMonitor
from iso_orchestrator.core.provisioner import WorkerProvisioner
from iso_orchestrator.core.retention import RetentionPurger
from iso_orchestrator.core.state_machine import failure_mutator
from iso_orchestrator.io.artifact_store import ArtifactStore
from iso_orchestrator.io.repository import BuildRepository
from iso_orchestrator.io.schema import BuildRecord, BuildStatus, DownloadGrant, utcnow
from iso_orchestrator.io.startup import StartupPayload, render_startup_script
from iso_orchestrator.io.status_channel import StatusChannel
from iso_orchestrator.policy.catalog import DEFAULT_CATALOG, Catalog
from iso_orchestrator.policy.errors import BuildNotFound, FailureReason, OrchestratorError
from iso_orchestrator.policy.profile import OrchestratorProfile

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]


@dataclass
class SweepResult:
    """What one sweep did."""
    dispatched: list[str] = field(default_factory=list)
    ingested: list[str] = field(default_factory=list)
    expired: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)


class Orchestrator:
    """Entry point for the API and the sweep runner."""

    def __init__(
        self,
        repository: BuildRepository,
        provisioner: WorkerProvisioner,
        status_channel: StatusChannel,
        artifact_store: ArtifactStore,
        profile: Optional[OrchestratorProfile] = None,
        catalog: Catalog = DEFAULT_CATALOG,
        pipeline_command: str = "",
        s3_endpoint: str = "",
        clock: Clock = utcnow,
    ):
        self.repository = repository
        self.provisioner = provisioner
        self.status_channel = status_channel
        self.artifact_store = artifact_store
        self.profile = profile or OrchestratorProfile.v1()
        self.catalog = catalog
        self.pipeline_command = pipeline_command
        self.s3_endpoint = s3_endpoint
        self.clock = clock

        self.admission = AdmissionController(repository, catalog, self.profile)
        self.cleanup_manager = CleanupManager(repository, provisioner, status_channel)
        self.ingestor = StatusIngestor(
            repository, status_channel, artifact_store, provisioner, self.cleanup_manager, self.profile
        )
        self.monitor = StallMonitor(repository, self.cleanup_manager, self.profile)
        self.delivery = ArtifactDelivery(repository, artifact_store, self.profile)
        self.purger = RetentionPurger(repository, artifact_store, status_channel, provisioner, self.profile)

    # =========================================================================
    # External operations
    # =========================================================================

    def submit(
        self,
        *,
        services: Sequence,
        models: Optional[Sequence] = None,
        gpu: bool = False,
        requester: str,
        image_name: Optional[str] = None,
    ) -> BuildRecord:
        """Validate and admit a build; it is dispatched separately."""
        return self.admission.submit(
            services=services,
            models=models,
            gpu=gpu,
            requester=requester,
            image_name=image_name,
            now=self.clock(),
        )

    def status(self, build_id: str) -> BuildRecord:
        record = self.repository.get(build_id)
        if record is None:
            raise BuildNotFound(build_id)
        return record

    def list_builds(
        self,
        status: Optional[BuildStatus] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> tuple[list[BuildRecord], int]:
        return self.repository.list_builds(status=status, limit=limit, offset=offset)

    def download(self, build_id: str) -> DownloadGrant:
        return self.delivery.grant(build_id, self.clock())

    def cancel(self, build_id: str) -> BuildRecord:
        """Cancel a build; a no-op returning the record if already terminal."""
        now = self.clock()
        record, changed = self.repository.update(
            build_id,
            failure_mutator(FailureReason.CANCELLED, "Build cancelled by request", now, self.profile.log_cap),
        )
        if not changed:
            logger.debug("Cancel of build %s ignored (status=%s)", build_id, record.status.value)
            return record

        logger.info("Build %s cancelled", build_id)
        return self.cleanup_manager.cleanup(build_id, now) or record

    def cleanup(self, build_id: str) -> Optional[BuildRecord]:
        return self.cleanup_manager.cleanup(build_id, self.clock())

    # =========================================================================
    # Dispatch
    # =========================================================================

    def startup_payload(self, record: BuildRecord) -> StartupPayload:
        config = record.requested_config
        return StartupPayload(
            build_id=record.build_id,
            services=tuple(config.services),
            models=tuple(config.models),
            gpu=config.gpu,
            image_name=config.image_name,
            status_bucket=self.status_channel.bucket,
            status_key=self.status_channel.key_for(record.build_id),
            artifact_bucket=self.artifact_store.bucket,
            artifact_key=self.artifact_store.destination_key(record.build_id, config.image_name),
            s3_endpoint=self.s3_endpoint,
            parallel_floor=self.profile.parallel_floor,
            parallel_ceiling=self.profile.parallel_ceiling,
        )

    def dispatch(self, build_id: str) -> Optional[BuildRecord]:
        """Claim a queued build and start its worker.

        Safe to call concurrently and repeatedly; only the caller that wins
        the ``queued -> provisioning`` claim provisions.
        """
        now = self.clock()
        record = self.admission.claim(build_id, now)
        if record is None:
            return self.repository.get(build_id)

        try:
            user_data = render_startup_script(self.startup_payload(record), self.pipeline_command)
            worker_ref = self.provisioner.provision(record, user_data)
        except (OrchestratorError, ValueError, KeyError, OSError) as exc:
            message = exc.message if isinstance(exc, OrchestratorError) else str(exc)
            record, _ = self.repository.update(
                build_id,
                failure_mutator(FailureReason.PROVISIONING, message, self.clock(), self.profile.log_cap),
            )
            logger.error("Provisioning failed for build %s: %s", build_id, message)
            self.cleanup_manager.cleanup(build_id, self.clock())
            return record

        bound_at = self.clock()

        def _bind(current: BuildRecord) -> Optional[BuildRecord]:
            if current.status != BuildStatus.PROVISIONING or current.worker_ref:
                return None
            current.worker_ref = worker_ref
            current.worker_bound_at = bound_at
            current.last_progress_at = bound_at
            current.updated_at = bound_at
            current.append_log(f"[provisioning] Worker {worker_ref} started", self.profile.log_cap)
            return current

        record, bound = self.repository.update(build_id, _bind)
        if not bound:
            logger.warning(
                "Build %s left provisioning (%s) before worker %s was bound; terminating it",
                build_id, record.status.value, worker_ref,
            )
            self.provisioner.terminate(worker_ref)
            return record

        logger.info("Build %s bound to worker %s", build_id, worker_ref)
        return record

    # =========================================================================
    # Background passes
    # =========================================================================

    def sweep_once(self) -> SweepResult:
        """One pass: dispatch queued builds, ingest reports, expire stalled ones.

        Errors are isolated per build so one bad record cannot stall the
        sweep.
        """
        result = SweepResult()

        for build_id in self.repository.active_ids():
            record = self.repository.get(build_id)
            if record is None or record.status != BuildStatus.QUEUED:
                continue
            try:
                self.dispatch(build_id)
                result.dispatched.append(build_id)
            except Exception as exc:
                logger.error("Dispatch of %s failed: %s", build_id, exc, exc_info=True)
                result.errors.append(build_id)

        for build_id in self.repository.active_ids():
            try:
                before = self.repository.get(build_id)
                after = self.ingestor.ingest(build_id, self.clock())
                if before is not None and after is not None and after.version != before.version:
                    result.ingested.append(build_id)
            except Exception as exc:
                logger.error("Ingestion for %s failed: %s", build_id, exc, exc_info=True)
                result.errors.append(build_id)

        for build_id in self.repository.active_ids():
            try:
                record = self.monitor.check(build_id, self.clock())
                if record is not None and record.status == BuildStatus.FAILED:
                    result.expired.append(build_id)
            except Exception as exc:
                logger.error("Monitor check for %s failed: %s", build_id, exc, exc_info=True)
                result.errors.append(build_id)

        if result.dispatched or result.ingested or result.expired:
            logger.info(
                "Sweep: dispatched=%d updated=%d expired=%d",
                len(result.dispatched), len(result.ingested), len(result.expired),
            )
        else:
            logger.debug("Sweep: nothing to do")
        return result

    def purge_once(self) -> list[str]:
        return self.purger.purge(self.clock())
