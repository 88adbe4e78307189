"""
SQLAlchemy-backed stores.

The per-user critical section is a row lock (SELECT ... FOR UPDATE) on the
user's row, held for the whole transaction. Dialects without row locks
(SQLite) rely on the in-process UserLocks that are always taken first.
A missing row is inserted before locking so that two first-time writers
for the same user still serialize on it.
"""

import logging
from contextlib import contextmanager
from typing import Iterator, List, Optional, Tuple, Type

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from .db import ReportChatRow, UsageRow, UserSubscriptionRow, as_utc
from .errors import PersistenceError
from .models import UsageRecord, UserSubscription
from .store import (
    SubscriptionStore,
    SubscriptionTransaction,
    UsageStore,
    UsageTransaction,
    UserLocks,
)

logger = logging.getLogger(__name__)


def _lock_or_create(session: Session, model: Type, user_id: str) -> Tuple[object, bool]:
    """Return (row, created) with the row locked for the rest of the transaction."""
    stmt = select(model).where(model.user_id == user_id).with_for_update()
    row = session.execute(stmt).scalar_one_or_none()
    if row is not None:
        return row, False

    row = model(user_id=user_id)
    session.add(row)
    try:
        session.flush()
    except IntegrityError:
        # Another writer created it first; wait on its lock instead.
        session.rollback()
        row = session.execute(stmt).scalar_one()
        return row, False
    return row, True


@contextmanager
def _session_scope(session_factory: sessionmaker, store_name: str, user_id: str) -> Iterator[Session]:
    session = session_factory()
    try:
        yield session
        session.commit()
    except SQLAlchemyError as e:
        session.rollback()
        logger.error("Store transaction failed", extra={
            "store": store_name,
            "user_id": user_id,
            "error": str(e),
        })
        raise PersistenceError(f"{store_name} unavailable", cause=e) from e
    except BaseException:
        session.rollback()
        raise
    finally:
        session.close()


class _SqlUsageTransaction(UsageTransaction):
    def __init__(self, session: Session, row: UsageRow, created: bool) -> None:
        self._session = session
        self._row = row
        self._created = created

    def load(self) -> Optional[UsageRecord]:
        if self._created and not self._row.day:
            return None
        return _usage_from_row(self._row)

    def save(self, record: UsageRecord) -> None:
        self._row.day = record.day
        self._row.week_start = record.week_start
        self._row.communications_today = record.communications_today
        self._row.snapshots_today = record.snapshots_today
        self._row.reports_this_week = record.reports_this_week

    def report_chats(self, report_id: str) -> int:
        row = self._session.get(ReportChatRow, (self._row.user_id, report_id))
        return row.message_count if row is not None else 0

    def set_report_chats(self, report_id: str, count: int) -> None:
        row = self._session.get(ReportChatRow, (self._row.user_id, report_id))
        if row is None:
            row = ReportChatRow(user_id=self._row.user_id, report_id=report_id, message_count=count)
            self._session.add(row)
        else:
            row.message_count = count


def _usage_from_row(row: UsageRow) -> UsageRecord:
    return UsageRecord(
        user_id=row.user_id,
        day=row.day,
        week_start=row.week_start,
        communications_today=row.communications_today or 0,
        snapshots_today=row.snapshots_today or 0,
        reports_this_week=row.reports_this_week or 0,
    )


class SqlUsageStore(UsageStore):
    def __init__(self, session_factory: sessionmaker) -> None:
        self._session_factory = session_factory
        self._locks = UserLocks()

    @contextmanager
    def transaction(self, user_id: str) -> Iterator[UsageTransaction]:
        with self._locks.hold(user_id):
            with _session_scope(self._session_factory, "usage store", user_id) as session:
                row, created = _lock_or_create(session, UsageRow, user_id)
                yield _SqlUsageTransaction(session, row, created)

    def read(self, user_id: str) -> Optional[UsageRecord]:
        try:
            with self._session_factory() as session:
                row = session.get(UsageRow, user_id)
                if row is None or not row.day:
                    return None
                return _usage_from_row(row)
        except SQLAlchemyError as e:
            raise PersistenceError("usage store unavailable", cause=e) from e

    def read_report_chats(self, user_id: str, report_id: str) -> int:
        try:
            with self._session_factory() as session:
                row = session.get(ReportChatRow, (user_id, report_id))
                return row.message_count if row is not None else 0
        except SQLAlchemyError as e:
            raise PersistenceError("usage store unavailable", cause=e) from e


class _SqlSubscriptionTransaction(SubscriptionTransaction):
    def __init__(self, row: UserSubscriptionRow, created: bool) -> None:
        self._row = row
        self._created = created

    def get(self) -> Optional[UserSubscription]:
        if self._created:
            return None
        return _subscription_from_row(self._row)

    def put(self, subscription: UserSubscription) -> None:
        if subscription.user_id != self._row.user_id:
            raise ValueError("subscription belongs to a different user")
        self._row.tier = subscription.tier.value
        self._row.status = subscription.status.value
        self._row.current_period_end = subscription.current_period_end
        self._row.cancel_at_period_end = subscription.cancel_at_period_end
        self._row.last_event_at = subscription.last_event_at
        self._row.created_at = subscription.created_at
        self._row.updated_at = subscription.updated_at
        self._created = False


def _subscription_from_row(row: UserSubscriptionRow) -> UserSubscription:
    return UserSubscription(
        user_id=row.user_id,
        tier=row.tier,
        status=row.status,
        current_period_end=as_utc(row.current_period_end),
        cancel_at_period_end=bool(row.cancel_at_period_end),
        created_at=as_utc(row.created_at),
        updated_at=as_utc(row.updated_at),
        last_event_at=as_utc(row.last_event_at),
    )


class SqlSubscriptionStore(SubscriptionStore):
    def __init__(self, session_factory: sessionmaker) -> None:
        self._session_factory = session_factory
        self._locks = UserLocks()

    @contextmanager
    def transaction(self, user_id: str) -> Iterator[SubscriptionTransaction]:
        with self._locks.hold(user_id):
            with _session_scope(self._session_factory, "subscription store", user_id) as session:
                row, created = _lock_or_create(session, UserSubscriptionRow, user_id)
                yield _SqlSubscriptionTransaction(row, created)

    def get(self, user_id: str) -> Optional[UserSubscription]:
        try:
            with self._session_factory() as session:
                row = session.get(UserSubscriptionRow, user_id)
                return _subscription_from_row(row) if row is not None else None
        except SQLAlchemyError as e:
            raise PersistenceError("subscription store unavailable", cause=e) from e

    def user_ids(self) -> List[str]:
        try:
            with self._session_factory() as session:
                return list(session.execute(
                    select(UserSubscriptionRow.user_id).order_by(UserSubscriptionRow.user_id)
                ).scalars())
        except SQLAlchemyError as e:
            raise PersistenceError("subscription store unavailable", cause=e) from e
