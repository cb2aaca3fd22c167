"""
Build repository: the only shared mutable state of the orchestrator.

Every change to a build goes through ``update()``, a read-modify-write that
commits only if the record was not changed underneath it (Redis
``WATCH``/``MULTI``/``EXEC``).  Admission is a single transaction over the
active-build set and the requester's quota window, so any number of API
processes and sweep runners can share one store.

Redis layout (``<p>`` = key prefix)::

    <p>:build:<build_id>    JSON BuildRecord
    <p>:active              SET of non-terminal build ids
    <p>:all                 ZSET build_id -> created_at
    <p>:finished            ZSET build_id -> finished_at
    <p>:quota:<requester>   ZSET build_id -> admitted_at

``InMemoryBuildRepository`` implements the same contract under a lock for
single-process development and tests.
"""
from __future__ import annotations

import logging
import math
import threading
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Callable, Optional, Sequence

import redis

from iso_orchestrator.io.schema import BuildRecord, BuildStatus
from iso_orchestrator.policy.errors import (
    AdmissionRejected,
    BuildNotFound,
    ConcurrentUpdate,
    FailureReason,
)
from iso_orchestrator.policy.profile import QuotaWindow

logger = logging.getLogger(__name__)

Mutator = Callable[[BuildRecord], Optional[BuildRecord]]


def _ts(value: datetime) -> float:
    return value.timestamp()


def _capacity_error(limit: int) -> AdmissionRejected:
    return AdmissionRejected(
        FailureReason.CAPACITY,
        f"Maximum concurrent builds ({limit}) reached. Please try again later.",
    )


def _quota_error(window: QuotaWindow, retry_after: int) -> AdmissionRejected:
    return AdmissionRejected(
        FailureReason.QUOTA,
        f"Build quota exceeded: at most {window.limit} builds per {window.seconds} seconds",
        retry_after=max(1, retry_after),
    )


class BuildRepository(ABC):
    """Durable store of build records with compare-and-swap updates."""

    @abstractmethod
    def admit(
        self,
        record: BuildRecord,
        *,
        max_active: int,
        quota_windows: Sequence[QuotaWindow],
        now: datetime,
    ) -> BuildRecord:
        """Insert *record* as queued if under the ceiling and quota, else raise."""

    @abstractmethod
    def get(self, build_id: str) -> Optional[BuildRecord]:
        ...

    @abstractmethod
    def update(self, build_id: str, mutate: Mutator) -> tuple[BuildRecord, bool]:
        """Apply *mutate* atomically.

        *mutate* receives a private copy of the current record and returns the
        record to store, or ``None`` to leave it untouched.  Returns the
        stored (or current) record and whether a write happened.
        """

    @abstractmethod
    def active_ids(self) -> list[str]:
        ...

    @abstractmethod
    def count_active(self) -> int:
        ...

    @abstractmethod
    def list_builds(
        self,
        status: Optional[BuildStatus] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> tuple[list[BuildRecord], int]:
        ...

    @abstractmethod
    def finished_before(self, cutoff: datetime) -> list[str]:
        """Ids of terminal builds whose ``finished_at`` is before *cutoff*."""

    @abstractmethod
    def delete(self, build_id: str) -> None:
        ...

    @abstractmethod
    def ping(self) -> bool:
        ...


# =============================================================================
# Redis
# =============================================================================

class RedisBuildRepository(BuildRepository):
    """Redis-backed repository using optimistic transactions."""

    def __init__(self, client: redis.Redis, prefix: str = "isoforge", cas_retries: int = 10):
        self._client = client
        self.prefix = prefix
        self.cas_retries = cas_retries

    @classmethod
    def from_url(cls, url: str, **kwargs) -> RedisBuildRepository:
        return cls(redis.Redis.from_url(url, decode_responses=True), **kwargs)

    # -- keys ---------------------------------------------------------------

    def _build_key(self, build_id: str) -> str:
        return f"{self.prefix}:build:{build_id}"

    @property
    def _active_key(self) -> str:
        return f"{self.prefix}:active"

    @property
    def _all_key(self) -> str:
        return f"{self.prefix}:all"

    @property
    def _finished_key(self) -> str:
        return f"{self.prefix}:finished"

    def _quota_key(self, requester: str) -> str:
        return f"{self.prefix}:quota:{requester}"

    # -- operations ---------------------------------------------------------

    def admit(self, record, *, max_active, quota_windows, now):
        requester = record.requested_config.requester
        active_key = self._active_key
        quota_key = self._quota_key(requester)
        now_ts = _ts(now)
        longest = max((w.seconds for w in quota_windows), default=0)

        with self._client.pipeline() as pipe:
            for _ in range(self.cas_retries):
                try:
                    pipe.watch(active_key, quota_key)

                    if pipe.scard(active_key) >= max_active:
                        raise _capacity_error(max_active)

                    for window in quota_windows:
                        since = now_ts - window.seconds
                        if pipe.zcount(quota_key, since, "+inf") >= window.limit:
                            oldest = pipe.zrangebyscore(
                                quota_key, since, "+inf", start=0, num=1, withscores=True
                            )
                            oldest_ts = oldest[0][1] if oldest else now_ts
                            raise _quota_error(window, math.ceil(oldest_ts + window.seconds - now_ts))

                    pipe.multi()
                    pipe.set(self._build_key(record.build_id), record.model_dump_json())
                    pipe.sadd(active_key, record.build_id)
                    pipe.zadd(self._all_key, {record.build_id: _ts(record.created_at)})
                    pipe.zadd(quota_key, {record.build_id: now_ts})
                    if longest:
                        pipe.zremrangebyscore(quota_key, "-inf", now_ts - longest)
                        pipe.expire(quota_key, longest)
                    pipe.execute()
                    return record
                except redis.WatchError:
                    logger.debug("Admission raced for requester %s, retrying", requester)
                    continue
        raise ConcurrentUpdate(f"Admission for {record.build_id} kept conflicting")

    def get(self, build_id):
        raw = self._client.get(self._build_key(build_id))
        if raw is None:
            return None
        return BuildRecord.model_validate_json(raw)

    def update(self, build_id, mutate):
        key = self._build_key(build_id)
        with self._client.pipeline() as pipe:
            for _ in range(self.cas_retries):
                try:
                    pipe.watch(key)
                    raw = pipe.get(key)
                    if raw is None:
                        raise BuildNotFound(build_id)

                    current = BuildRecord.model_validate_json(raw)
                    candidate = mutate(current.model_copy(deep=True))
                    if candidate is None:
                        pipe.unwatch()
                        return current, False

                    candidate.version = current.version + 1
                    pipe.multi()
                    pipe.set(key, candidate.model_dump_json())
                    if candidate.is_terminal and not current.is_terminal:
                        pipe.srem(self._active_key, build_id)
                        finished = candidate.finished_at or candidate.updated_at
                        pipe.zadd(self._finished_key, {build_id: _ts(finished)})
                    pipe.execute()
                    return candidate, True
                except redis.WatchError:
                    logger.debug("Concurrent update on build %s, retrying", build_id)
                    continue
        raise ConcurrentUpdate(f"Build {build_id} kept changing during update")

    def active_ids(self):
        return sorted(self._client.smembers(self._active_key))

    def count_active(self):
        return int(self._client.scard(self._active_key))

    def list_builds(self, status=None, limit=50, offset=0):
        ids = self._client.zrevrange(self._all_key, 0, -1)
        if not ids:
            return [], 0
        raws = self._client.mget([self._build_key(i) for i in ids])
        records = [BuildRecord.model_validate_json(r) for r in raws if r is not None]
        if status is not None:
            records = [r for r in records if r.status == status]
        return records[offset:offset + limit], len(records)

    def finished_before(self, cutoff):
        return list(self._client.zrangebyscore(self._finished_key, "-inf", _ts(cutoff)))

    def delete(self, build_id):
        pipe = self._client.pipeline()
        pipe.delete(self._build_key(build_id))
        pipe.srem(self._active_key, build_id)
        pipe.zrem(self._all_key, build_id)
        pipe.zrem(self._finished_key, build_id)
        pipe.execute()

    def ping(self):
        try:
            return bool(self._client.ping())
        except redis.RedisError as exc:
            logger.error("Redis ping failed: %s", exc)
            return False

    def close(self) -> None:
        self._client.close()


# =============================================================================
# In-memory
# =============================================================================

class InMemoryBuildRepository(BuildRepository):
    """Process-local repository with the same transactional contract."""

    def __init__(self):
        self._lock = threading.RLock()
        self._records: dict[str, str] = {}
        self._active: set[str] = set()
        self._finished: dict[str, float] = {}
        self._quota: dict[str, list[tuple[float, str]]] = {}

    def admit(self, record, *, max_active, quota_windows, now):
        requester = record.requested_config.requester
        now_ts = _ts(now)
        with self._lock:
            if len(self._active) >= max_active:
                raise _capacity_error(max_active)

            history = self._quota.setdefault(requester, [])
            for window in quota_windows:
                since = now_ts - window.seconds
                recent = sorted(ts for ts, _ in history if ts >= since)
                if len(recent) >= window.limit:
                    raise _quota_error(window, math.ceil(recent[0] + window.seconds - now_ts))

            longest = max((w.seconds for w in quota_windows), default=0)
            history[:] = [(ts, bid) for ts, bid in history if ts >= now_ts - longest]
            history.append((now_ts, record.build_id))
            self._records[record.build_id] = record.model_dump_json()
            self._active.add(record.build_id)
            return record

    def get(self, build_id):
        with self._lock:
            raw = self._records.get(build_id)
        return BuildRecord.model_validate_json(raw) if raw is not None else None

    def update(self, build_id, mutate):
        with self._lock:
            raw = self._records.get(build_id)
            if raw is None:
                raise BuildNotFound(build_id)
            current = BuildRecord.model_validate_json(raw)
            candidate = mutate(current.model_copy(deep=True))
            if candidate is None:
                return current, False

            candidate.version = current.version + 1
            self._records[build_id] = candidate.model_dump_json()
            if candidate.is_terminal and not current.is_terminal:
                self._active.discard(build_id)
                self._finished[build_id] = _ts(candidate.finished_at or candidate.updated_at)
            return candidate, True

    def active_ids(self):
        with self._lock:
            return sorted(self._active)

    def count_active(self):
        with self._lock:
            return len(self._active)

    def list_builds(self, status=None, limit=50, offset=0):
        with self._lock:
            records = [BuildRecord.model_validate_json(r) for r in self._records.values()]
        records.sort(key=lambda r: r.created_at, reverse=True)
        if status is not None:
            records = [r for r in records if r.status == status]
        return records[offset:offset + limit], len(records)

    def finished_before(self, cutoff):
        cutoff_ts = _ts(cutoff)
        with self._lock:
            return [bid for bid, ts in self._finished.items() if ts <= cutoff_ts]

    def delete(self, build_id):
        with self._lock:
            self._records.pop(build_id, None)
            self._active.discard(build_id)
            self._finished.pop(build_id, None)

    def ping(self):
        return True
