from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import FrozenSet, Optional, Tuple


class Tier(str, Enum):
    """Entitlement level. FREE is the entry tier, PAID the upgraded one."""

    FREE = "free"
    PAID = "paid"


class SubscriptionStatus(str, Enum):
    ACTIVE = "active"
    CANCELLED = "cancelled"
    PAST_DUE = "past_due"
    TRIALING = "trialing"


class WindowKind(str, Enum):
    DAILY = "daily"
    WEEKLY = "weekly"
    LIFETIME = "lifetime"


class Resource(str, Enum):
    """Metered counters owned by the usage ledger."""

    COMMUNICATION = "communication"
    WEEKLY_REPORT = "weekly_report"
    SNAPSHOT = "snapshot"
    REPORT_CHAT = "report_chat"


RESOURCE_WINDOWS = {
    Resource.COMMUNICATION: WindowKind.DAILY,
    Resource.WEEKLY_REPORT: WindowKind.WEEKLY,
    Resource.SNAPSHOT: WindowKind.DAILY,
    Resource.REPORT_CHAT: WindowKind.LIFETIME,
}


@dataclass(frozen=True)
class TierLimits:
    """Per-tier limits. Entry and upgraded tiers use different quota shapes."""

    tier: Tier
    max_data_days: int
    data_range_options: Tuple[int, ...]
    max_snapshots_per_day: int
    allowed_models: FrozenSet[str]
    default_model: str
    can_view_report_history: bool
    max_reports_per_week: Optional[int] = None
    max_chat_messages_per_report: Optional[int] = None
    max_communications_per_day: Optional[int] = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "allowed_models", frozenset(self.allowed_models))
        object.__setattr__(self, "data_range_options", tuple(sorted(self.data_range_options)))
        if self.default_model not in self.allowed_models:
            raise ValueError(f"default_model {self.default_model!r} is not an allowed model")
        for name in (
            "max_data_days",
            "max_snapshots_per_day",
            "max_reports_per_week",
            "max_chat_messages_per_report",
            "max_communications_per_day",
        ):
            value = getattr(self, name)
            if value is not None and value < 0:
                raise ValueError(f"{name} must be non-negative")

    @property
    def uses_pooled_quota(self) -> bool:
        return self.max_communications_per_day is not None

    def limit_for(self, resource: Resource) -> Optional[int]:
        """Ceiling for a resource, or None when the tier does not meter it."""
        if resource is Resource.COMMUNICATION:
            return self.max_communications_per_day
        if resource is Resource.WEEKLY_REPORT:
            return self.max_reports_per_week
        if resource is Resource.SNAPSHOT:
            return self.max_snapshots_per_day
        if resource is Resource.REPORT_CHAT:
            return self.max_chat_messages_per_report
        raise ValueError(f"unknown resource: {resource!r}")


@dataclass(frozen=True)
class UsageRecord:
    """Windowed counters for one user. Counts only mean something next to their marker."""

    user_id: str
    day: str
    week_start: str
    communications_today: int = 0
    snapshots_today: int = 0
    reports_this_week: int = 0

    def __post_init__(self) -> None:
        for name in ("communications_today", "snapshots_today", "reports_this_week"):
            if getattr(self, name) < 0:
                raise ValueError(f"{name} must be non-negative")

    def rolled_over(self, day: str, week_start: str) -> "UsageRecord":
        """Reset counters whose marker is stale. Applying twice is a no-op."""
        record = self
        if record.day != day:
            record = replace(record, day=day, communications_today=0, snapshots_today=0)
        if record.week_start != week_start:
            record = replace(record, week_start=week_start, reports_this_week=0)
        return record

    def count(self, resource: Resource) -> int:
        if resource is Resource.COMMUNICATION:
            return self.communications_today
        if resource is Resource.WEEKLY_REPORT:
            return self.reports_this_week
        if resource is Resource.SNAPSHOT:
            return self.snapshots_today
        raise ValueError(f"{resource.value} is not tracked on the usage record")

    def incremented(self, resource: Resource) -> "UsageRecord":
        if resource is Resource.COMMUNICATION:
            return replace(self, communications_today=self.communications_today + 1)
        if resource is Resource.WEEKLY_REPORT:
            return replace(self, reports_this_week=self.reports_this_week + 1)
        if resource is Resource.SNAPSHOT:
            return replace(self, snapshots_today=self.snapshots_today + 1)
        raise ValueError(f"{resource.value} is not tracked on the usage record")


@dataclass(frozen=True)
class UserSubscription:
    """The single per-user subscription record consulted for every decision."""

    user_id: str
    tier: Tier = Tier.FREE
    status: SubscriptionStatus = SubscriptionStatus.ACTIVE
    current_period_end: Optional[datetime] = None
    cancel_at_period_end: bool = False
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    last_event_at: Optional[datetime] = None

    def __post_init__(self) -> None:
        user_id = str(self.user_id).strip()
        if not user_id:
            raise ValueError("user_id is required")
        object.__setattr__(self, "user_id", user_id)
        object.__setattr__(self, "tier", Tier(self.tier))
        object.__setattr__(self, "status", SubscriptionStatus(self.status))
        for name in ("current_period_end", "created_at", "updated_at", "last_event_at"):
            value = getattr(self, name)
            if value is not None and value.tzinfo is None:
                raise ValueError(f"{name} must be timezone-aware")

    def state(self) -> tuple:
        """Fields that describe entitlement, without bookkeeping timestamps."""
        return (self.tier, self.status, self.current_period_end, self.cancel_at_period_end)

    def to_dict(self) -> dict:
        return {
            "userId": self.user_id,
            "tier": self.tier.value,
            "status": self.status.value,
            "currentPeriodEnd": _iso(self.current_period_end),
            "cancelAtPeriodEnd": self.cancel_at_period_end,
            "createdAt": _iso(self.created_at),
            "updatedAt": _iso(self.updated_at),
        }


@dataclass(frozen=True)
class ConsumeOutcome:
    allowed: bool
    remaining: int
    limit: int


@dataclass(frozen=True)
class Decision:
    """Allow/deny answer for a gated action. Denial is data, not an error."""

    allowed: bool
    reason: Optional[str] = None
    remaining: Optional[int] = None
    upgrade_required: bool = False

    def to_dict(self) -> dict:
        data: dict = {"allowed": self.allowed, "upgradeRequired": self.upgrade_required}
        if self.reason is not None:
            data["reason"] = self.reason
        if self.remaining is not None:
            data["remaining"] = self.remaining
        return data


@dataclass(frozen=True)
class ModelDecision:
    allowed: bool
    forced_model: Optional[str] = None

    def to_dict(self) -> dict:
        data: dict = {"allowed": self.allowed}
        if self.forced_model is not None:
            data["forcedModel"] = self.forced_model
        return data


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None
