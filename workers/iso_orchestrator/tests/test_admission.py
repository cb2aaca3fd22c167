"""
Tests for iso_orchestrator.core.admission: ceiling, quotas, claim.
"""
import pytest

from iso_orchestrator.core.admission import AdmissionController
from iso_orchestrator.io.schema import BuildStatus
from iso_orchestrator.policy.catalog import DEFAULT_CATALOG
from iso_orchestrator.policy.errors import AdmissionRejected, FailureReason, ValidationFailed
from iso_orchestrator.policy.profile import OrchestratorProfile, QuotaWindow


def _controller(repository, **overrides):
    return AdmissionController(repository, DEFAULT_CATALOG, OrchestratorProfile.v1(**overrides))


def _submit(controller, clock, requester="alice", services=("ollama",)):
    return controller.submit(
        services=list(services), models=None, gpu=False,
        requester=requester, image_name=None, now=clock(),
    )


class TestSubmit:

    def test_admitted_build_is_queued(self, repository, clock):
        record = _submit(_controller(repository), clock)
        stored = repository.get(record.build_id)
        assert stored.status == BuildStatus.QUEUED
        assert stored.progress == 0
        assert stored.worker_ref is None
        assert stored.created_at == clock()
        assert stored.estimated_minutes == 30 + 2 + 15

    def test_build_ids_are_unique(self, repository, clock):
        controller = _controller(repository)
        a = _submit(controller, clock, requester="a")
        b = _submit(controller, clock, requester="b")
        assert a.build_id != b.build_id

    def test_validation_failure_stores_nothing(self, repository, clock):
        controller = _controller(repository)
        with pytest.raises(ValidationFailed):
            _submit(controller, clock, services=("nope",))
        assert repository.list_builds()[1] == 0
        assert repository.count_active() == 0


class TestCeiling:

    def test_fourth_concurrent_build_rejected(self, repository, clock):
        controller = _controller(repository, max_concurrent_builds=3)
        for requester in ("a", "b", "c"):
            _submit(controller, clock, requester=requester)

        with pytest.raises(AdmissionRejected) as exc_info:
            _submit(controller, clock, requester="d")

        assert exc_info.value.reason == FailureReason.CAPACITY
        assert repository.count_active() == 3
        assert repository.list_builds()[1] == 3

    def test_terminal_builds_free_capacity(self, repository, clock):
        controller = _controller(repository, max_concurrent_builds=1)
        first = _submit(controller, clock, requester="a")

        def _finish(record):
            record.status = BuildStatus.FAILED
            record.finished_at = clock()
            return record

        repository.update(first.build_id, _finish)
        second = _submit(controller, clock, requester="b")
        assert repository.get(second.build_id).status == BuildStatus.QUEUED


class TestQuota:

    def test_hourly_quota(self, repository, clock):
        controller = _controller(
            repository,
            max_concurrent_builds=100,
            quota_windows=(QuotaWindow(limit=2, seconds=3600),),
        )
        _submit(controller, clock)
        clock.advance(600)
        _submit(controller, clock)
        clock.advance(600)

        with pytest.raises(AdmissionRejected) as exc_info:
            _submit(controller, clock)

        assert exc_info.value.reason == FailureReason.QUOTA
        # The first admission leaves the window 40 minutes from now
        assert exc_info.value.retry_after == 2400

    def test_quota_is_per_requester(self, repository, clock):
        controller = _controller(
            repository,
            max_concurrent_builds=100,
            quota_windows=(QuotaWindow(limit=1, seconds=3600),),
        )
        _submit(controller, clock, requester="alice")
        _submit(controller, clock, requester="bob")
        with pytest.raises(AdmissionRejected):
            _submit(controller, clock, requester="alice")

    def test_window_slides(self, repository, clock):
        controller = _controller(
            repository,
            max_concurrent_builds=100,
            quota_windows=(QuotaWindow(limit=1, seconds=3600),),
        )
        _submit(controller, clock)
        clock.advance(3601)
        _submit(controller, clock)
        assert repository.list_builds()[1] == 2

    def test_daily_quota_default(self, repository, clock):
        controller = _controller(repository, max_concurrent_builds=100)
        for _ in range(5):
            _submit(controller, clock)
            clock.advance(3600 + 1)
        with pytest.raises(AdmissionRejected) as exc_info:
            _submit(controller, clock)
        assert exc_info.value.reason == FailureReason.QUOTA


class TestClaim:

    def test_claim_once(self, repository, clock):
        controller = _controller(repository)
        record = _submit(controller, clock)

        claimed = controller.claim(record.build_id, clock())
        assert claimed.status == BuildStatus.PROVISIONING
        assert controller.claim(record.build_id, clock()) is None

    def test_claim_cancelled_build(self, repository, clock):
        controller = _controller(repository)
        record = _submit(controller, clock)

        def _cancel(current):
            current.status = BuildStatus.CANCELLED
            return current

        repository.update(record.build_id, _cancel)
        assert controller.claim(record.build_id, clock()) is None
