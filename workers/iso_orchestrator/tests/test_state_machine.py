"""
Tests for iso_orchestrator.core.state_machine.
"""
from datetime import datetime, timezone

import pytest

from iso_orchestrator.core.state_machine import (
    IllegalTransition,
    advance,
    can_transition,
    fail,
    failure_mutator,
    later_of,
)
from iso_orchestrator.io.schema import BuildConfig, BuildRecord, BuildStatus
from iso_orchestrator.policy.errors import FailureReason

T0 = datetime(2025, 3, 1, 12, 0, 0, tzinfo=timezone.utc)


def _record(status=BuildStatus.QUEUED):
    return BuildRecord(
        build_id="b-1",
        status=status,
        requested_config=BuildConfig(services=["ollama"], requester="alice", image_name="img"),
        created_at=T0,
        last_progress_at=T0,
        updated_at=T0,
    )


class TestCanTransition:

    def test_forward_step(self):
        assert can_transition(BuildStatus.QUEUED, BuildStatus.PROVISIONING)

    def test_forward_skip(self):
        assert can_transition(BuildStatus.PROVISIONING, BuildStatus.BUILDING)

    def test_backward_refused(self):
        assert not can_transition(BuildStatus.BUILDING, BuildStatus.PREPARING)

    def test_same_state_refused(self):
        assert not can_transition(BuildStatus.BUILDING, BuildStatus.BUILDING)

    @pytest.mark.parametrize("status", [s for s in BuildStatus if not s.is_terminal])
    def test_failure_reachable_from_every_live_state(self, status):
        assert can_transition(status, BuildStatus.FAILED)
        assert can_transition(status, BuildStatus.CANCELLED)

    @pytest.mark.parametrize("status", [BuildStatus.COMPLETED, BuildStatus.FAILED, BuildStatus.CANCELLED])
    def test_terminal_has_no_exits(self, status):
        for target in BuildStatus:
            assert not can_transition(status, target)


class TestAdvanceAndFail:

    def test_advance_sets_timestamps(self):
        record = advance(_record(), BuildStatus.PROVISIONING, T0)
        assert record.status == BuildStatus.PROVISIONING
        assert record.finished_at is None

    def test_advance_to_terminal_sets_finished_at(self):
        record = advance(_record(BuildStatus.UPLOADING), BuildStatus.COMPLETED, T0)
        assert record.finished_at == T0

    def test_illegal_advance_raises(self):
        with pytest.raises(IllegalTransition):
            advance(_record(BuildStatus.COMPLETED), BuildStatus.FAILED, T0)

    def test_fail_records_reason(self):
        record = fail(_record(BuildStatus.BUILDING), FailureReason.STALLED, "no progress", T0)
        assert record.status == BuildStatus.FAILED
        assert record.error.reason == FailureReason.STALLED
        assert record.stage == "failed"

    def test_cancel_reason_means_cancelled_status(self):
        record = fail(_record(), FailureReason.CANCELLED, "bye", T0)
        assert record.status == BuildStatus.CANCELLED

    def test_failure_mutator_ignores_terminal(self):
        mutate = failure_mutator(FailureReason.STALLED, "late", T0, log_cap=10)
        assert mutate(_record(BuildStatus.COMPLETED)) is None

    def test_failure_mutator_appends_log(self):
        mutate = failure_mutator(FailureReason.EXECUTION, "boom", T0, log_cap=10)
        record = mutate(_record(BuildStatus.BUILDING))
        assert record.logs[-1] == "[failed] boom"


class TestLaterOf:

    def test_forward(self):
        assert later_of(BuildStatus.PREPARING, BuildStatus.BUILDING) == BuildStatus.BUILDING

    def test_backward(self):
        assert later_of(BuildStatus.UPLOADING, BuildStatus.BUILDING) is None

    def test_terminal_current(self):
        assert later_of(BuildStatus.FAILED, BuildStatus.BUILDING) is None
