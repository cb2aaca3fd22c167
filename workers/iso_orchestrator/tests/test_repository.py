"""
Tests for iso_orchestrator.io.repository.

The same contract suite runs against the in-memory repository and, when a
Redis server is reachable at ``ISOFORGE_TEST_REDIS_URL`` (default
``redis://localhost:6379/15``), against the Redis repository.
"""
import os
import uuid
from datetime import datetime, timedelta, timezone

import pytest
import redis

from iso_orchestrator.io.repository import InMemoryBuildRepository, RedisBuildRepository
from iso_orchestrator.io.schema import BuildConfig, BuildRecord, BuildStatus
from iso_orchestrator.policy.errors import AdmissionRejected, BuildNotFound, ConcurrentUpdate, FailureReason
from iso_orchestrator.policy.profile import QuotaWindow

T0 = datetime(2025, 3, 1, 12, 0, 0, tzinfo=timezone.utc)
WINDOWS = (QuotaWindow(limit=3, seconds=3600),)
REDIS_URL = os.environ.get("ISOFORGE_TEST_REDIS_URL", "redis://localhost:6379/15")


def _redis_available() -> bool:
    try:
        return bool(redis.Redis.from_url(REDIS_URL, socket_connect_timeout=0.5).ping())
    except redis.RedisError:
        return False


@pytest.fixture(params=["memory", "redis"])
def repo(request):
    if request.param == "memory":
        yield InMemoryBuildRepository()
        return

    if not _redis_available():
        pytest.skip(f"Redis not reachable at {REDIS_URL}")
    prefix = f"isoforge-test-{uuid.uuid4().hex[:8]}"
    repository = RedisBuildRepository.from_url(REDIS_URL, prefix=prefix)
    yield repository
    client = redis.Redis.from_url(REDIS_URL)
    for key in client.scan_iter(f"{prefix}:*"):
        client.delete(key)
    repository.close()


def _record(requester="alice", created_at=T0):
    return BuildRecord(
        build_id=str(uuid.uuid4()),
        requested_config=BuildConfig(services=["ollama"], requester=requester, image_name="img"),
        created_at=created_at,
        last_progress_at=created_at,
        updated_at=created_at,
    )


def _admit(repo, record, max_active=3, now=T0):
    return repo.admit(record, max_active=max_active, quota_windows=WINDOWS, now=now)


class TestAdmit:

    def test_admit_and_get(self, repo):
        record = _admit(repo, _record())
        stored = repo.get(record.build_id)
        assert stored.build_id == record.build_id
        assert stored.status == BuildStatus.QUEUED
        assert repo.active_ids() == [record.build_id]

    def test_get_missing(self, repo):
        assert repo.get("missing") is None

    def test_capacity(self, repo):
        for requester in ("a", "b"):
            _admit(repo, _record(requester), max_active=2)
        with pytest.raises(AdmissionRejected) as exc_info:
            _admit(repo, _record("c"), max_active=2)
        assert exc_info.value.reason == FailureReason.CAPACITY
        assert repo.count_active() == 2

    def test_quota_retry_after(self, repo):
        for i in range(3):
            _admit(repo, _record(), max_active=10, now=T0 + timedelta(minutes=i))
        with pytest.raises(AdmissionRejected) as exc_info:
            _admit(repo, _record(), max_active=10, now=T0 + timedelta(minutes=10))
        assert exc_info.value.reason == FailureReason.QUOTA
        assert exc_info.value.retry_after == 50 * 60


class TestUpdate:

    def test_mutator_result_is_stored(self, repo):
        record = _admit(repo, _record())

        def _progress(current):
            current.progress = 40
            return current

        updated, changed = repo.update(record.build_id, _progress)
        assert changed
        assert updated.version == record.version + 1
        assert repo.get(record.build_id).progress == 40

    def test_none_means_no_write(self, repo):
        record = _admit(repo, _record())
        current, changed = repo.update(record.build_id, lambda r: None)
        assert not changed
        assert current.version == record.version

    def test_mutator_gets_private_copy(self, repo):
        record = _admit(repo, _record())

        def _touch_then_abort(current):
            current.progress = 99
            return None

        repo.update(record.build_id, _touch_then_abort)
        assert repo.get(record.build_id).progress == 0

    def test_missing_build(self, repo):
        with pytest.raises(BuildNotFound):
            repo.update("missing", lambda r: r)

    def test_terminal_transition_updates_indexes(self, repo):
        record = _admit(repo, _record())

        def _finish(current):
            current.status = BuildStatus.COMPLETED
            current.finished_at = T0 + timedelta(hours=1)
            return current

        repo.update(record.build_id, _finish)
        assert repo.count_active() == 0
        assert repo.finished_before(T0 + timedelta(hours=2)) == [record.build_id]
        assert repo.finished_before(T0) == []


class TestListAndDelete:

    def test_list_newest_first_with_filter(self, repo):
        older = _admit(repo, _record("a", created_at=T0))
        newer = _admit(repo, _record("b", created_at=T0 + timedelta(minutes=5)))

        records, total = repo.list_builds()
        assert total == 2
        assert [r.build_id for r in records] == [newer.build_id, older.build_id]

        records, total = repo.list_builds(status=BuildStatus.COMPLETED)
        assert (records, total) == ([], 0)

    def test_pagination(self, repo):
        for i in range(3):
            _admit(repo, _record(f"r{i}", created_at=T0 + timedelta(minutes=i)))
        records, total = repo.list_builds(limit=1, offset=1)
        assert total == 3
        assert len(records) == 1

    def test_delete(self, repo):
        record = _admit(repo, _record())
        repo.delete(record.build_id)
        assert repo.get(record.build_id) is None
        assert repo.count_active() == 0
        assert repo.list_builds()[1] == 0

    def test_ping(self, repo):
        assert repo.ping()


class TestRedisConflicts:
    """CAS retry behaviour, exercised without a server."""

    def test_retries_exhausted(self):
        class _Pipeline:
            def __enter__(self):
                return self

            def __exit__(self, *exc):
                return False

            def watch(self, *keys):
                raise redis.WatchError("changed")

        class _Client:
            def pipeline(self):
                return _Pipeline()

        repository = RedisBuildRepository(_Client(), cas_retries=3)
        with pytest.raises(ConcurrentUpdate):
            repository.update("b-1", lambda r: r)
