"""
Database models for subscription state and usage counters.

All rows are keyed by user_id. Timestamps are stored timezone-aware; dialects
that drop tzinfo (SQLite) are normalised back to UTC on read.
"""

from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import Boolean, Column, DateTime, Integer, String, create_engine
from sqlalchemy.orm import declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool

Base = declarative_base()


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TimestampMixin:
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow)


class UserSubscriptionRow(Base):
    """One subscription record per user. Mutated only through the registry."""

    __tablename__ = "user_subscriptions"

    user_id = Column(String(255), primary_key=True)
    tier = Column(String(50), nullable=False, default="free")
    status = Column(String(50), nullable=False, default="active")
    current_period_end = Column(DateTime(timezone=True), nullable=True)
    cancel_at_period_end = Column(Boolean, nullable=False, default=False)
    last_event_at = Column(
        DateTime(timezone=True),
        nullable=True,
        comment="Timestamp of the newest provider event applied; older events are ignored",
    )
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)


class UsageRow(Base):
    """Windowed counters. A count is only valid for its day/week marker."""

    __tablename__ = "usage_records"

    user_id = Column(String(255), primary_key=True)
    day = Column(String(10), nullable=False, default="", comment="UTC YYYY-MM-DD")
    week_start = Column(String(10), nullable=False, default="", comment="UTC Monday YYYY-MM-DD")
    communications_today = Column(Integer, nullable=False, default=0)
    snapshots_today = Column(Integer, nullable=False, default=0)
    reports_this_week = Column(Integer, nullable=False, default=0)


class ReportChatRow(Base, TimestampMixin):
    """Chat messages sent against one report. Never reset."""

    __tablename__ = "report_chat_counters"

    user_id = Column(String(255), primary_key=True)
    report_id = Column(String(255), primary_key=True)
    message_count = Column(Integer, nullable=False, default=0)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def create_session_factory(database_url: str, create_tables: bool = True) -> sessionmaker:
    """Build a session factory; SQLite connections may be used from any thread, in-memory ones share one connection."""
    if database_url in ("sqlite://", "sqlite:///:memory:"):
        engine = create_engine(
            database_url,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
    elif database_url.startswith("sqlite"):
        engine = create_engine(database_url, connect_args={"check_same_thread": False})
    else:
        engine = create_engine(database_url, pool_pre_ping=True)

    if create_tables:
        Base.metadata.create_all(engine)
    return sessionmaker(bind=engine, expire_on_commit=False)
