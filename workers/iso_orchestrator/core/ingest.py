"""
Status ingestion.

Reads each bound build's status object and folds it into the build record:
progress, stage and log line, plus the forward status transition the stage
implies.  Completion is only accepted once the artifact is actually in the
object store.
"""
from __future__ import annotations

import logging
from datetime import datetime
from typing import Optional

from botocore.exceptions import BotoCoreError, ClientError

from iso_orchestrator.core.cleanup import CleanupManager
from iso_orchestrator.core.provisioner import WorkerProvisioner, WorkerState
from iso_orchestrator.core.state_machine import advance, failure_mutator, later_of
from iso_orchestrator.io.artifact_store import ArtifactStore
from iso_orchestrator.io.repository import BuildRepository
from iso_orchestrator.io.schema import BuildRecord, BuildStatus, StatusReport
from iso_orchestrator.io.status_channel import StatusChannel
from iso_orchestrator.policy.errors import FailureReason
from iso_orchestrator.policy.profile import OrchestratorProfile

logger = logging.getLogger(__name__)

FAILED_STAGES = frozenset({"failed", "error"})
BUILDING_STAGE_PREFIXES = ("extracting-", "copying-", "repacking-", "building")
UPLOADING_THRESHOLD = 95
BUILDING_THRESHOLD = 65


def classify_report(report: StatusReport) -> BuildStatus:
    """Map a worker report to the status it implies.

    ``COMPLETED`` and ``FAILED`` mean "take the completion / failure path";
    everything else is a candidate forward transition.
    """
    stage = report.stage.strip().lower()
    if stage == "complete":
        return BuildStatus.COMPLETED
    if stage in FAILED_STAGES:
        return BuildStatus.FAILED
    if report.progress >= 100:
        return BuildStatus.COMPLETED
    if stage.startswith("uploading") or report.progress >= UPLOADING_THRESHOLD:
        return BuildStatus.UPLOADING
    if (
        stage.startswith(BUILDING_STAGE_PREFIXES)
        or stage == "creating-iso"
        or report.progress >= BUILDING_THRESHOLD
    ):
        return BuildStatus.BUILDING
    return BuildStatus.PREPARING


def apply_report(
    record: BuildRecord,
    report: StatusReport,
    target: Optional[BuildStatus],
    now: datetime,
    log_cap: int,
) -> bool:
    """Fold *report* into *record* in place; return whether anything changed."""
    changed = False

    if report.progress > record.progress:
        record.progress = report.progress
        record.last_progress_at = now
        changed = True

    if report.stage and report.stage != record.stage:
        record.stage = report.stage
        changed = True

    line = f"[{report.stage}] {report.message}".rstrip()
    if report.message and (not record.logs or record.logs[-1] != line):
        record.append_log(line, log_cap)
        changed = True

    if target is not None and later_of(record.status, target) is not None:
        advance(record, target, now)
        changed = True

    if changed:
        record.updated_at = now
    return changed


class StatusIngestor:
    """Applies status channel contents to build records."""

    def __init__(
        self,
        repository: BuildRepository,
        status_channel: StatusChannel,
        artifact_store: ArtifactStore,
        provisioner: WorkerProvisioner,
        cleanup: CleanupManager,
        profile: OrchestratorProfile,
    ):
        self.repository = repository
        self.status_channel = status_channel
        self.artifact_store = artifact_store
        self.provisioner = provisioner
        self.cleanup = cleanup
        self.profile = profile

    def ingest(self, build_id: str, now: datetime) -> Optional[BuildRecord]:
        """Process the latest report for one build.  Returns the current record."""
        record = self.repository.get(build_id)
        if record is None or record.is_terminal or not record.worker_ref:
            return record

        report = self.status_channel.read(build_id)
        if report is not None:
            # Terminal outcomes are accepted whatever progress they carry.
            outcome = classify_report(report)
            if outcome == BuildStatus.COMPLETED:
                return self._complete(record, report, now)
            if outcome == BuildStatus.FAILED:
                return self._fail(
                    build_id,
                    FailureReason.EXECUTION,
                    report.message or "Worker reported failure",
                    now,
                )
            if report.progress < record.progress:
                logger.debug(
                    "Discarding stale report for %s (%s < %s)",
                    build_id, report.progress, record.progress,
                )
            else:
                record = self._progress(build_id, report, outcome, now)
                if record.is_terminal:
                    return record

        return self._check_liveness(record, now)

    # -- paths ----------------------------------------------------------------

    def _progress(
        self,
        build_id: str,
        report: StatusReport,
        target: BuildStatus,
        now: datetime,
    ) -> BuildRecord:
        def _mutate(current: BuildRecord) -> Optional[BuildRecord]:
            if current.is_terminal or report.progress < current.progress:
                return None
            if not apply_report(current, report, target, now, self.profile.log_cap):
                return None
            return current

        record, changed = self.repository.update(build_id, _mutate)
        if changed:
            logger.info(
                "Build %s: %s %s%% (%s)",
                build_id, record.status.value, record.progress, record.stage,
            )
        return record

    def _complete(self, record: BuildRecord, report: StatusReport, now: datetime) -> BuildRecord:
        build_id = record.build_id
        config = record.requested_config
        key = report.artifact or self.artifact_store.destination_key(build_id, config.image_name)

        try:
            metadata = self.artifact_store.get_metadata(key)
        except (ClientError, BotoCoreError) as exc:
            logger.warning("Could not verify artifact %s for %s, retrying next sweep: %s", key, build_id, exc)
            return record

        if metadata is None:
            # Worker clocks are untrusted; a future-dated report falls back to
            # the time completion was first seen here.
            seen_at = record.completion_seen_at or now
            age = (now - min(report.timestamp, seen_at)).total_seconds()
            if age < self.profile.artifact_grace_seconds:
                logger.debug("Artifact %s for %s not visible yet (%.0fs since completion)", key, build_id, age)
                if record.completion_seen_at is None:
                    record = self._mark_completion_seen(build_id, now)
                return record
            return self._fail(
                build_id,
                FailureReason.DELIVERY,
                f"Worker reported completion but artifact {key} is missing",
                now,
            )

        def _mutate(current: BuildRecord) -> Optional[BuildRecord]:
            if current.is_terminal:
                return None
            apply_report(current, report, None, now, self.profile.log_cap)
            if current.progress < 100:
                current.progress = 100
                current.last_progress_at = now
            current.artifact_ref = key
            advance(current, BuildStatus.COMPLETED, now)
            return current

        record, changed = self.repository.update(build_id, _mutate)
        if changed:
            logger.info("Build %s completed: %s (%s bytes)", build_id, key, metadata["size"])
            self.cleanup.cleanup(build_id, now)
        return record

    def _mark_completion_seen(self, build_id: str, now: datetime) -> BuildRecord:
        def _mutate(current: BuildRecord) -> Optional[BuildRecord]:
            if current.is_terminal or current.completion_seen_at is not None:
                return None
            current.completion_seen_at = now
            return current

        record, _ = self.repository.update(build_id, _mutate)
        return record

    def _fail(self, build_id: str, reason: FailureReason, message: str, now: datetime) -> BuildRecord:
        record, changed = self.repository.update(
            build_id, failure_mutator(reason, message, now, self.profile.log_cap)
        )
        if changed:
            logger.info("Build %s failed (%s): %s", build_id, reason.value, message)
            self.cleanup.cleanup(build_id, now)
        return record

    def _check_liveness(self, record: BuildRecord, now: datetime) -> BuildRecord:
        state = self.provisioner.describe(record.worker_ref)
        if state not in (WorkerState.GONE, WorkerState.STOPPED):
            return record

        # DescribeInstances lags RunInstances; a fresh worker can read as not found.
        if state == WorkerState.GONE and record.worker_bound_at is not None:
            bound_for = (now - record.worker_bound_at).total_seconds()
            if bound_for < self.profile.worker_visibility_seconds:
                logger.debug(
                    "Worker %s for %s not visible yet (bound %.0fs ago)",
                    record.worker_ref, record.build_id, bound_for,
                )
                return record

        # The worker may have written its final report just before exiting.
        final = self.status_channel.read(record.build_id)
        outcome = classify_report(final) if final is not None else None
        if outcome == BuildStatus.COMPLETED:
            return self._complete(record, final, now)

        message = "worker terminated before completion"
        if outcome == BuildStatus.FAILED and final.message:
            message = final.message
        return self._fail(record.build_id, FailureReason.EXECUTION, message, now)
