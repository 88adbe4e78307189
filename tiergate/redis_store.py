"""
Redis-backed usage ledger storage for multi-process deployments.

Keys:
- usage:{user_id}               hash of the windowed counters and their markers
- usage:{user_id}:report_chats  hash of report_id -> messages sent
- usage:lock:{user_id}          distributed lock held for one transaction

Writes are buffered in the transaction and flushed in a single MULTI/EXEC
pipeline before the lock is released. Unlike a rate limiter this store never
fails open: a Redis outage surfaces as PersistenceError.
"""

import logging
from contextlib import contextmanager
from typing import Dict, Iterator, Optional

import redis
from redis.exceptions import LockError

from .errors import PersistenceError
from .models import UsageRecord
from .store import UsageStore, UsageTransaction, UserLocks

logger = logging.getLogger(__name__)

USAGE_KEY_PREFIX = "usage:"
RECORD_TTL_SECONDS = 15 * 24 * 3600  # outlives the weekly window


def _record_key(user_id: str) -> str:
    return f"{USAGE_KEY_PREFIX}{user_id}"


def _chats_key(user_id: str) -> str:
    return f"{USAGE_KEY_PREFIX}{user_id}:report_chats"


def _lock_key(user_id: str) -> str:
    return f"{USAGE_KEY_PREFIX}lock:{user_id}"


def _decode(record: Dict[str, str], user_id: str) -> Optional[UsageRecord]:
    if not record or not record.get("day"):
        return None
    return UsageRecord(
        user_id=user_id,
        day=record["day"],
        week_start=record.get("week_start", ""),
        communications_today=int(record.get("communications_today", 0)),
        snapshots_today=int(record.get("snapshots_today", 0)),
        reports_this_week=int(record.get("reports_this_week", 0)),
    )


def _encode(record: UsageRecord) -> Dict[str, str]:
    return {
        "day": record.day,
        "week_start": record.week_start,
        "communications_today": str(record.communications_today),
        "snapshots_today": str(record.snapshots_today),
        "reports_this_week": str(record.reports_this_week),
    }


class _RedisUsageTransaction(UsageTransaction):
    def __init__(self, client: redis.Redis, user_id: str) -> None:
        self._client = client
        self._user_id = user_id
        self._record: Optional[UsageRecord] = None
        self._loaded = False
        self._dirty = False
        self._chats: Dict[str, int] = {}

    def load(self) -> Optional[UsageRecord]:
        if not self._loaded:
            self._record = _decode(self._client.hgetall(_record_key(self._user_id)), self._user_id)
            self._loaded = True
        return self._record

    def save(self, record: UsageRecord) -> None:
        self._record = record
        self._loaded = True
        self._dirty = True

    def report_chats(self, report_id: str) -> int:
        if report_id in self._chats:
            return self._chats[report_id]
        raw = self._client.hget(_chats_key(self._user_id), report_id)
        return int(raw) if raw else 0

    def set_report_chats(self, report_id: str, count: int) -> None:
        self._chats[report_id] = count

    def commit(self) -> None:
        if not self._dirty and not self._chats:
            return
        pipe = self._client.pipeline(transaction=True)
        if self._dirty and self._record is not None:
            key = _record_key(self._user_id)
            pipe.hset(key, mapping=_encode(self._record))
            pipe.expire(key, RECORD_TTL_SECONDS)
        if self._chats:
            pipe.hset(_chats_key(self._user_id), mapping={k: str(v) for k, v in self._chats.items()})
        pipe.execute()


class RedisUsageStore(UsageStore):
    """Usage counters shared by every process pointed at the same Redis."""

    def __init__(
        self,
        redis_url: Optional[str] = None,
        client: Optional[redis.Redis] = None,
        lock_timeout: float = 10.0,
        blocking_timeout: float = 5.0,
    ) -> None:
        if redis_url is None and client is None:
            raise ValueError("redis_url or client is required")
        self.redis_url = redis_url
        self._redis = client
        self._lock_timeout = lock_timeout
        self._blocking_timeout = blocking_timeout
        self._locks = UserLocks()

    def _get_redis(self) -> redis.Redis:
        """Connect lazily so the module imports before Redis is reachable."""
        if self._redis is None:
            self._redis = redis.from_url(
                self.redis_url,
                decode_responses=True,
                socket_connect_timeout=2,
                socket_timeout=2,
            )
        return self._redis

    @contextmanager
    def transaction(self, user_id: str) -> Iterator[UsageTransaction]:
        with self._locks.hold(user_id):
            client = self._get_redis()
            try:
                lock = client.lock(
                    _lock_key(user_id),
                    timeout=self._lock_timeout,
                    blocking_timeout=self._blocking_timeout,
                )
                if not lock.acquire():
                    raise PersistenceError(f"Timed out waiting for usage lock for {user_id}")
            except redis.RedisError as e:
                raise self._unavailable(user_id, e) from e

            try:
                txn = _RedisUsageTransaction(client, user_id)
                yield txn
                txn.commit()
            except redis.RedisError as e:
                raise self._unavailable(user_id, e) from e
            finally:
                try:
                    lock.release()
                except LockError:
                    logger.error("Usage lock expired before release", extra={"user_id": user_id})
                except redis.RedisError as e:
                    logger.warning("Failed to release usage lock", extra={"user_id": user_id, "error": str(e)})

    def read(self, user_id: str) -> Optional[UsageRecord]:
        try:
            return _decode(self._get_redis().hgetall(_record_key(user_id)), user_id)
        except redis.RedisError as e:
            raise self._unavailable(user_id, e) from e

    def read_report_chats(self, user_id: str, report_id: str) -> int:
        try:
            raw = self._get_redis().hget(_chats_key(user_id), report_id)
        except redis.RedisError as e:
            raise self._unavailable(user_id, e) from e
        return int(raw) if raw else 0

    @staticmethod
    def _unavailable(user_id: str, error: Exception) -> PersistenceError:
        logger.error("Redis unavailable for usage ledger", extra={
            "user_id": user_id,
            "error": str(error),
            "error_type": type(error).__name__,
        })
        return PersistenceError("usage store unavailable", cause=error)
