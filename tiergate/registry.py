"""
Subscription registry: the single per-user subscription record.

Writers:
- webhook events (apply with the event's ordering timestamp)
- reconciliation against the billing provider (reconcile)
- admin override (set_tier)

All writers go through the same per-user store transaction, so a webhook and
a reconciliation for the same user never interleave a read-merge-write.

Idempotency comes from the merge itself: a patch overwrites fields with the
event's intended state, so applying it twice lands on the same record. When a
merge changes nothing, the stored record (including updated_at) is left as is.
"""

import logging
from dataclasses import dataclass, replace
from datetime import datetime
from typing import Any, Optional

from .models import SubscriptionStatus, Tier, UserSubscription
from .store import SubscriptionStore
from .windows import Clock, utcnow

logger = logging.getLogger(__name__)


class _Unset:
    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "UNSET"

    def __bool__(self) -> bool:
        return False


UNSET: Any = _Unset()


@dataclass(frozen=True)
class SubscriptionPatch:
    """Partial update. UNSET fields keep their current value; None clears."""

    tier: Any = UNSET
    status: Any = UNSET
    current_period_end: Any = UNSET
    cancel_at_period_end: Any = UNSET

    def fields(self) -> dict:
        return {
            name: value
            for name, value in (
                ("tier", self.tier),
                ("status", self.status),
                ("current_period_end", self.current_period_end),
                ("cancel_at_period_end", self.cancel_at_period_end),
            )
            if value is not UNSET
        }


@dataclass(frozen=True)
class ApplyResult:
    subscription: UserSubscription
    changed: bool
    stale: bool = False


def merge_subscription(
    current: UserSubscription,
    patch: SubscriptionPatch,
    now: datetime,
) -> UserSubscription:
    """Pure merge of a patch into a record. updated_at moves only on a real change."""
    updates = patch.fields()
    if "tier" in updates:
        updates["tier"] = Tier(updates["tier"])
    if "status" in updates:
        updates["status"] = SubscriptionStatus(updates["status"])
    if "cancel_at_period_end" in updates:
        updates["cancel_at_period_end"] = bool(updates["cancel_at_period_end"])

    merged = replace(current, **updates)
    if merged.state() == current.state():
        return current
    return replace(merged, updated_at=now)


class SubscriptionRegistry:
    """Owns UserSubscription records; every mutation is a merge under a per-user lock."""

    def __init__(self, store: SubscriptionStore, clock: Optional[Clock] = None) -> None:
        self.store = store
        self._clock = clock or utcnow

    def get(self, user_id: str) -> UserSubscription:
        """Stored record, or the default free/active record when none exists yet."""
        user_id = _require_user_id(user_id)
        existing = self.store.get(user_id)
        if existing is not None:
            return existing
        now = self._clock()
        return UserSubscription(user_id=user_id, created_at=now, updated_at=now)

    def apply(
        self,
        user_id: str,
        patch: SubscriptionPatch,
        *,
        event_at: Optional[datetime] = None,
    ) -> ApplyResult:
        """
        Merge a patch into the user's record.

        event_at orders provider events: a patch older than the newest event
        already applied is ignored. Equal timestamps re-apply (idempotent replay).
        """
        user_id = _require_user_id(user_id)
        now = self._clock()

        with self.store.transaction(user_id) as txn:
            current = txn.get() or UserSubscription(user_id=user_id, created_at=now, updated_at=now)

            if event_at is not None and current.last_event_at is not None and event_at < current.last_event_at:
                logger.warning("Ignoring out-of-order subscription event", extra={
                    "user_id": user_id,
                    "event_at": event_at.isoformat(),
                    "last_event_at": current.last_event_at.isoformat(),
                })
                return ApplyResult(subscription=current, changed=False, stale=True)

            merged = merge_subscription(current, patch, now)
            if event_at is not None and (merged.last_event_at is None or event_at > merged.last_event_at):
                merged = replace(merged, last_event_at=event_at)

            changed = merged.state() != current.state()
            if merged is not current:
                txn.put(merged)

        if changed:
            logger.info("Subscription updated", extra={
                "user_id": user_id,
                "tier": merged.tier.value,
                "status": merged.status.value,
                "cancel_at_period_end": merged.cancel_at_period_end,
            })
        return ApplyResult(subscription=merged, changed=changed)

    def reconcile(
        self,
        user_id: str,
        authoritative: SubscriptionPatch,
        *,
        observed_at: datetime,
    ) -> ApplyResult:
        """
        Overwrite the record with provider state when they diverge.

        observed_at is when the provider query started. A record written after
        that moment is newer than the provider snapshot and is kept.
        """
        user_id = _require_user_id(user_id)
        now = self._clock()

        with self.store.transaction(user_id) as txn:
            stored = txn.get()
            current = stored or UserSubscription(user_id=user_id, created_at=now, updated_at=now)

            if stored is not None and stored.updated_at > observed_at:
                logger.info("Skipping stale provider snapshot", extra={
                    "user_id": user_id,
                    "observed_at": observed_at.isoformat(),
                    "updated_at": stored.updated_at.isoformat(),
                })
                return ApplyResult(subscription=current, changed=False, stale=True)

            merged = merge_subscription(current, authoritative, now)
            if merged is current:
                return ApplyResult(subscription=current, changed=False)

            if merged.last_event_at is None or observed_at > merged.last_event_at:
                merged = replace(merged, last_event_at=observed_at)
            txn.put(merged)

        logger.warning("Subscription corrected from billing provider", extra={
            "user_id": user_id,
            "previous_tier": current.tier.value,
            "previous_status": current.status.value,
            "tier": merged.tier.value,
            "status": merged.status.value,
        })
        return ApplyResult(subscription=merged, changed=True)

    def set_tier(self, user_id: str, tier: Tier) -> UserSubscription:
        """Admin override: force the tier, keep every other field, stamp updated_at."""
        user_id = _require_user_id(user_id)
        tier = Tier(tier)
        now = self._clock()

        with self.store.transaction(user_id) as txn:
            current = txn.get() or UserSubscription(user_id=user_id, created_at=now, updated_at=now)
            updated = replace(current, tier=tier, updated_at=now)
            txn.put(updated)

        logger.info("Subscription tier overridden", extra={
            "user_id": user_id,
            "previous_tier": current.tier.value,
            "tier": tier.value,
        })
        return updated


def _require_user_id(user_id: str) -> str:
    normalized = str(user_id or "").strip()
    if not normalized:
        raise ValueError("user_id is required")
    return normalized
