"""
Storage contracts for the usage ledger and the subscription registry.

Every mutation runs inside a per-user transaction: the store guarantees that
at most one transaction per user is open at a time, so a read-then-write inside
it is atomic with respect to other callers for the same user. Transactions for
different users never contend.

In-memory stores live here; durable backends are in sql_store and redis_store.
"""

from __future__ import annotations

import threading
from abc import ABC, abstractmethod
from contextlib import contextmanager
from typing import Dict, Iterator, List, Optional, Tuple

from .models import UsageRecord, UserSubscription


class _LockEntry:
    __slots__ = ("lock", "users")

    def __init__(self) -> None:
        self.lock = threading.Lock()
        self.users = 0


class UserLocks:
    """
    Per-user mutexes. No lock ever spans two users.

    An entry lives only while some caller holds or waits on it.
    """

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: Dict[str, _LockEntry] = {}

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)

    @contextmanager
    def hold(self, user_id: str) -> Iterator[None]:
        with self._guard:
            entry = self._locks.get(user_id)
            if entry is None:
                entry = self._locks[user_id] = _LockEntry()
            entry.users += 1
        try:
            with entry.lock:
                yield
        finally:
            with self._guard:
                entry.users -= 1
                if entry.users == 0:
                    del self._locks[user_id]


class UsageTransaction(ABC):
    """Buffered view of one user's counters, committed when the block exits cleanly."""

    @abstractmethod
    def load(self) -> Optional[UsageRecord]:
        ...

    @abstractmethod
    def save(self, record: UsageRecord) -> None:
        ...

    @abstractmethod
    def report_chats(self, report_id: str) -> int:
        ...

    @abstractmethod
    def set_report_chats(self, report_id: str, count: int) -> None:
        ...


class UsageStore(ABC):
    @abstractmethod
    def transaction(self, user_id: str):
        """Context manager yielding a UsageTransaction for an exclusive section."""

    @abstractmethod
    def read(self, user_id: str) -> Optional[UsageRecord]:
        ...

    @abstractmethod
    def read_report_chats(self, user_id: str, report_id: str) -> int:
        ...


class SubscriptionTransaction(ABC):
    @abstractmethod
    def get(self) -> Optional[UserSubscription]:
        ...

    @abstractmethod
    def put(self, subscription: UserSubscription) -> None:
        ...


class SubscriptionStore(ABC):
    @abstractmethod
    def transaction(self, user_id: str):
        """Context manager yielding a SubscriptionTransaction for an exclusive section."""

    @abstractmethod
    def get(self, user_id: str) -> Optional[UserSubscription]:
        ...

    @abstractmethod
    def user_ids(self) -> List[str]:
        ...


class _MemoryUsageTransaction(UsageTransaction):
    def __init__(self, store: "InMemoryUsageStore", user_id: str) -> None:
        self._store = store
        self._user_id = user_id
        self._record: Optional[UsageRecord] = None
        self._dirty_record = False
        self._chats: Dict[str, int] = {}

    def load(self) -> Optional[UsageRecord]:
        if self._dirty_record:
            return self._record
        return self._store._records.get(self._user_id)

    def save(self, record: UsageRecord) -> None:
        self._record = record
        self._dirty_record = True

    def report_chats(self, report_id: str) -> int:
        if report_id in self._chats:
            return self._chats[report_id]
        return self._store._chats.get((self._user_id, report_id), 0)

    def set_report_chats(self, report_id: str, count: int) -> None:
        self._chats[report_id] = count

    def commit(self) -> None:
        if self._dirty_record and self._record is not None:
            self._store._records[self._user_id] = self._record
        for report_id, count in self._chats.items():
            self._store._chats[(self._user_id, report_id)] = count


class InMemoryUsageStore(UsageStore):
    """Process-local ledger storage. Counters do not survive a restart."""

    def __init__(self) -> None:
        self._locks = UserLocks()
        self._records: Dict[str, UsageRecord] = {}
        self._chats: Dict[Tuple[str, str], int] = {}

    @contextmanager
    def transaction(self, user_id: str) -> Iterator[UsageTransaction]:
        with self._locks.hold(user_id):
            txn = _MemoryUsageTransaction(self, user_id)
            yield txn
            txn.commit()

    def read(self, user_id: str) -> Optional[UsageRecord]:
        return self._records.get(user_id)

    def read_report_chats(self, user_id: str, report_id: str) -> int:
        return self._chats.get((user_id, report_id), 0)


class _MemorySubscriptionTransaction(SubscriptionTransaction):
    def __init__(self, store: "InMemorySubscriptionStore", user_id: str) -> None:
        self._store = store
        self._user_id = user_id
        self._pending: Optional[UserSubscription] = None

    def get(self) -> Optional[UserSubscription]:
        if self._pending is not None:
            return self._pending
        return self._store._records.get(self._user_id)

    def put(self, subscription: UserSubscription) -> None:
        if subscription.user_id != self._user_id:
            raise ValueError("subscription belongs to a different user")
        self._pending = subscription

    def commit(self) -> None:
        if self._pending is not None:
            self._store._records[self._user_id] = self._pending


class InMemorySubscriptionStore(SubscriptionStore):
    def __init__(self) -> None:
        self._locks = UserLocks()
        self._records: Dict[str, UserSubscription] = {}

    @contextmanager
    def transaction(self, user_id: str) -> Iterator[SubscriptionTransaction]:
        with self._locks.hold(user_id):
            txn = _MemorySubscriptionTransaction(self, user_id)
            yield txn
            txn.commit()

    def get(self, user_id: str) -> Optional[UserSubscription]:
        return self._records.get(user_id)

    def user_ids(self) -> List[str]:
        return sorted(self._records)
