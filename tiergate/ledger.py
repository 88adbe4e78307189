"""
Usage ledger: per-user quota counters with daily/weekly windows.

Every check-and-increment runs inside one per-user store transaction:
1. Load the stored UsageRecord (or start an empty one)
2. Roll over any counter whose window marker is stale
3. Compare the current count against the tier ceiling
4. If below, increment and persist; otherwise deny with remaining = 0

Because steps 2-4 share the transaction, K concurrent callers against a
remaining quota of R < K produce exactly R successes.

peek() computes the same rollover on the fly but never writes it back.
"""

import logging
from typing import Callable, Optional

from .loader import TierCatalog
from .models import (
    RESOURCE_WINDOWS,
    ConsumeOutcome,
    Resource,
    Tier,
    TierLimits,
    UsageRecord,
    WindowKind,
)
from .store import UsageStore
from .windows import Clock, markers, utcnow

logger = logging.getLogger(__name__)


class UsageLedger:
    """Race-safe quota enforcement over an explicit UsageStore."""

    def __init__(
        self,
        store: UsageStore,
        catalog: TierCatalog,
        tier_resolver: Callable[[str], Tier],
        clock: Optional[Clock] = None,
    ) -> None:
        self.store = store
        self.catalog = catalog
        self._tier_resolver = tier_resolver
        self._clock = clock or utcnow

    # -- Generic counters ------------------------------------------------

    def try_consume(
        self,
        user_id: str,
        resource: Resource,
        window: Optional[WindowKind] = None,
        *,
        tier: Optional[Tier] = None,
    ) -> ConsumeOutcome:
        """
        Atomically check a windowed counter against its ceiling and increment it.

        A resource the tier does not meter has a ceiling of 0 and is always denied.
        """
        user_id = _require_user_id(user_id)
        resource = self._validate(resource, window)
        limits = self._limits(user_id, tier)
        limit = limits.limit_for(resource) or 0
        day, week = markers(self._clock())

        with self.store.transaction(user_id) as txn:
            stored = txn.load()
            record = _current_record(stored, user_id, day, week)
            used = record.count(resource)

            if used >= limit:
                if record != stored:
                    txn.save(record)
                logger.info("Quota denied", extra={
                    "user_id": user_id,
                    "tier": limits.tier.value,
                    "resource": resource.value,
                    "used": used,
                    "limit": limit,
                })
                return ConsumeOutcome(allowed=False, remaining=0, limit=limit)

            txn.save(record.incremented(resource))

        logger.debug("Quota consumed", extra={
            "user_id": user_id,
            "resource": resource.value,
            "used": used + 1,
            "limit": limit,
        })
        return ConsumeOutcome(allowed=True, remaining=limit - used - 1, limit=limit)

    def peek(
        self,
        user_id: str,
        resource: Resource,
        window: Optional[WindowKind] = None,
        *,
        tier: Optional[Tier] = None,
    ) -> int:
        """Remaining quota for display. Read-only: rollover is not persisted."""
        user_id = _require_user_id(user_id)
        resource = self._validate(resource, window)
        limit = self._limits(user_id, tier).limit_for(resource) or 0
        record = self.usage(user_id)
        return max(0, limit - record.count(resource))

    def usage(self, user_id: str) -> UsageRecord:
        """The user's counters as they read right now, after on-the-fly rollover."""
        user_id = _require_user_id(user_id)
        day, week = markers(self._clock())
        return _current_record(self.store.read(user_id), user_id, day, week)

    # -- Action-specific consumption -------------------------------------

    def consume_report(self, user_id: str, *, tier: Optional[Tier] = None) -> ConsumeOutcome:
        """Spend one report: weekly counter on the entry tier, the daily pool otherwise."""
        limits = self._limits(_require_user_id(user_id), tier)
        resource = Resource.COMMUNICATION if limits.uses_pooled_quota else Resource.WEEKLY_REPORT
        return self.try_consume(user_id, resource, tier=limits.tier)

    def consume_snapshot(self, user_id: str, *, tier: Optional[Tier] = None) -> ConsumeOutcome:
        return self.try_consume(user_id, Resource.SNAPSHOT, tier=tier)

    def consume_report_chat(
        self,
        user_id: str,
        report_id: str,
        *,
        tier: Optional[Tier] = None,
    ) -> ConsumeOutcome:
        """
        Spend one chat message on a report.

        Pooled tiers spend from both the per-report counter and the daily pool;
        either both counters advance or neither does.
        """
        user_id = _require_user_id(user_id)
        report_id = _require_report_id(report_id)
        limits = self._limits(user_id, tier)
        day, week = markers(self._clock())

        with self.store.transaction(user_id) as txn:
            chats = txn.report_chats(report_id)

            if limits.uses_pooled_quota:
                stored = txn.load()
                record = _current_record(stored, user_id, day, week)
                limit = limits.max_communications_per_day or 0
                used = record.count(Resource.COMMUNICATION)
                if used >= limit:
                    if record != stored:
                        txn.save(record)
                    return self._denied(user_id, limits, Resource.COMMUNICATION, used, limit)
                txn.save(record.incremented(Resource.COMMUNICATION))
                txn.set_report_chats(report_id, chats + 1)
                return ConsumeOutcome(allowed=True, remaining=limit - used - 1, limit=limit)

            limit = limits.max_chat_messages_per_report or 0
            if chats >= limit:
                return self._denied(user_id, limits, Resource.REPORT_CHAT, chats, limit)
            txn.set_report_chats(report_id, chats + 1)
            return ConsumeOutcome(allowed=True, remaining=limit - chats - 1, limit=limit)

    def peek_report_chat(self, user_id: str, report_id: str, *, tier: Optional[Tier] = None) -> int:
        user_id = _require_user_id(user_id)
        report_id = _require_report_id(report_id)
        limits = self._limits(user_id, tier)
        if limits.uses_pooled_quota:
            return self.peek(user_id, Resource.COMMUNICATION, tier=limits.tier)
        limit = limits.max_chat_messages_per_report or 0
        return max(0, limit - self.store.read_report_chats(user_id, report_id))

    # -- Helpers ---------------------------------------------------------

    def _limits(self, user_id: str, tier: Optional[Tier]) -> TierLimits:
        return self.catalog.limits_for(tier if tier is not None else self._tier_resolver(user_id))

    @staticmethod
    def _validate(resource: Resource, window: Optional[WindowKind]) -> Resource:
        resource = Resource(resource)
        if resource is Resource.REPORT_CHAT:
            raise ValueError("report chat counters are scoped to a report; use consume_report_chat")
        expected = RESOURCE_WINDOWS[resource]
        if window is not None and WindowKind(window) is not expected:
            raise ValueError(f"{resource.value} is metered per {expected.value} window, not {window}")
        return resource

    @staticmethod
    def _denied(user_id: str, limits: TierLimits, resource: Resource, used: int, limit: int) -> ConsumeOutcome:
        logger.info("Quota denied", extra={
            "user_id": user_id,
            "tier": limits.tier.value,
            "resource": resource.value,
            "used": used,
            "limit": limit,
        })
        return ConsumeOutcome(allowed=False, remaining=0, limit=limit)


def _current_record(stored: Optional[UsageRecord], user_id: str, day: str, week: str) -> UsageRecord:
    if stored is None:
        return UsageRecord(user_id=user_id, day=day, week_start=week)
    return stored.rolled_over(day, week)


def _require_user_id(user_id: str) -> str:
    normalized = str(user_id or "").strip()
    if not normalized:
        raise ValueError("user_id is required")
    return normalized


def _require_report_id(report_id: str) -> str:
    normalized = str(report_id or "").strip()
    if not normalized:
        raise ValueError("report_id is required")
    return normalized
