"""
Entitlement decisions.

Reads the registry and peeks the ledger; never mutates either. Each check
returns a Decision. upgrade_required is set only when a higher tier would
raise the ceiling that caused the denial; a top-tier cooldown is not an
upgrade prompt.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from .ledger import UsageLedger
from .loader import TierCatalog
from .models import (
    ConsumeOutcome,
    Decision,
    ModelDecision,
    Resource,
    SubscriptionStatus,
    Tier,
    TierLimits,
    UsageRecord,
    UserSubscription,
)
from .registry import SubscriptionRegistry
from .windows import Clock, utcnow

logger = logging.getLogger(__name__)

ACTION_REPORT = "report"
ACTION_CHAT = "chat"
ACTION_SNAPSHOT = "snapshot"

DAILY_LIMIT_REASON = "Daily limit reached. Try again tomorrow."
WEEKLY_REPORT_REASON = "Weekly report limit reached. Upgrade to Pro for more reports."
REPORT_CHAT_REASON = "You've used your follow-up question for this report. Upgrade to Pro for more."
SNAPSHOT_LOCKED_REASON = "Daily Snapshot is a Pro feature. Upgrade to access it."
SNAPSHOT_USED_REASON = "Daily snapshot used. Try again tomorrow."


def effective_tier(subscription: UserSubscription, now: datetime) -> Tier:
    """
    Tier whose limits apply right now.

    A cancelled paid subscription keeps paid limits until its period ends;
    with no known period end it is treated as already over.
    """
    if subscription.tier is not Tier.PAID:
        return subscription.tier
    if subscription.status is SubscriptionStatus.CANCELLED:
        period_end = subscription.current_period_end
        if period_end is None or now >= period_end:
            return Tier.FREE
    return Tier.PAID


@dataclass(frozen=True)
class TierInfo:
    tier: Tier
    limits: TierLimits
    usage: UsageRecord
    subscription: UserSubscription
    reports_remaining: int
    snapshots_remaining: int
    communications_remaining: Optional[int]

    @property
    def chat_enabled(self) -> bool:
        return self.limits.uses_pooled_quota or (self.limits.max_chat_messages_per_report or 0) > 0

    @property
    def snapshot_enabled(self) -> bool:
        return self.limits.max_snapshots_per_day > 0

    def to_dict(self) -> dict:
        limits = self.limits
        usage: dict = {
            "reportsRemaining": self.reports_remaining,
            "chatEnabled": self.chat_enabled,
            "snapshotEnabled": self.snapshot_enabled,
            "snapshotsRemaining": self.snapshots_remaining,
        }
        if self.communications_remaining is not None:
            usage["llmCommunicationsRemaining"] = self.communications_remaining
        return {
            "tier": self.tier.value,
            "limits": {
                "maxDataDays": limits.max_data_days,
                "dataRangeOptions": list(limits.data_range_options),
                "maxReportsPerWeek": limits.max_reports_per_week,
                "maxChatMessagesPerReport": limits.max_chat_messages_per_report,
                "maxLLMCommunicationsPerDay": limits.max_communications_per_day,
                "maxSnapshotsPerDay": limits.max_snapshots_per_day,
                "allowedModels": sorted(limits.allowed_models),
                "canViewReportHistory": limits.can_view_report_history,
            },
            "usage": usage,
            "maxDataDays": limits.max_data_days,
            "allowedModels": sorted(limits.allowed_models),
            "subscription": {
                "status": self.subscription.status.value,
                "currentPeriodEnd": (
                    self.subscription.current_period_end.isoformat()
                    if self.subscription.current_period_end else None
                ),
                "cancelAtPeriodEnd": self.subscription.cancel_at_period_end,
            },
        }


class EntitlementEngine:
    """Pure allow/deny answers composed from catalog, registry and ledger."""

    def __init__(
        self,
        catalog: TierCatalog,
        registry: SubscriptionRegistry,
        ledger: UsageLedger,
        clock: Optional[Clock] = None,
    ) -> None:
        self.catalog = catalog
        self.registry = registry
        self.ledger = ledger
        self._clock = clock or utcnow

    def effective_tier(self, user_id: str) -> Tier:
        return effective_tier(self.registry.get(user_id), self._clock())

    def can_create_report(self, user_id: str) -> Decision:
        tier = self.effective_tier(user_id)
        limits = self.catalog.limits_for(tier)
        resource = Resource.COMMUNICATION if limits.uses_pooled_quota else Resource.WEEKLY_REPORT
        remaining = self.ledger.peek(user_id, resource, tier=tier)
        return self.decide(tier, ACTION_REPORT, remaining)

    def can_send_chat_message(self, user_id: str, report_id: str) -> Decision:
        tier = self.effective_tier(user_id)
        remaining = self.ledger.peek_report_chat(user_id, report_id, tier=tier)
        return self.decide(tier, ACTION_CHAT, remaining)

    def can_use_snapshot(self, user_id: str) -> Decision:
        tier = self.effective_tier(user_id)
        remaining = self.ledger.peek(user_id, Resource.SNAPSHOT, tier=tier)
        return self.decide(tier, ACTION_SNAPSHOT, remaining)

    def max_data_days(self, user_id: str) -> int:
        return self.catalog.limits_for(self.effective_tier(user_id)).max_data_days

    def is_model_allowed(self, user_id: str, model_id: str) -> ModelDecision:
        """Disallowed models are substituted with the tier's default, not rejected."""
        tier = self.effective_tier(user_id)
        if self.catalog.is_model_allowed(tier, model_id):
            return ModelDecision(allowed=True)
        return ModelDecision(allowed=False, forced_model=self.catalog.default_model(tier))

    def tier_info(self, user_id: str, subscription: Optional[UserSubscription] = None) -> TierInfo:
        subscription = subscription or self.registry.get(user_id)
        tier = effective_tier(subscription, self._clock())
        limits = self.catalog.limits_for(tier)
        usage = self.ledger.usage(user_id)

        communications_remaining: Optional[int] = None
        if limits.uses_pooled_quota:
            communications_remaining = self.ledger.peek(user_id, Resource.COMMUNICATION, tier=tier)
            reports_remaining = communications_remaining
        else:
            reports_remaining = self.ledger.peek(user_id, Resource.WEEKLY_REPORT, tier=tier)

        return TierInfo(
            tier=tier,
            limits=limits,
            usage=usage,
            subscription=subscription,
            reports_remaining=reports_remaining,
            snapshots_remaining=self.ledger.peek(user_id, Resource.SNAPSHOT, tier=tier),
            communications_remaining=communications_remaining,
        )

    def decide(self, tier: Tier, action: str, remaining: int) -> Decision:
        if remaining > 0:
            return Decision(allowed=True, remaining=remaining)
        return Decision(
            allowed=False,
            reason=self._denial_reason(tier, action),
            remaining=0,
            upgrade_required=self.catalog.can_upgrade(tier),
        )

    def decide_outcome(self, tier: Tier, action: str, outcome: ConsumeOutcome) -> Decision:
        """Decision for a consumption that has just been recorded."""
        if outcome.allowed:
            return Decision(allowed=True, remaining=outcome.remaining)
        return self.decide(tier, action, 0)

    def _denial_reason(self, tier: Tier, action: str) -> str:
        limits = self.catalog.limits_for(tier)
        if action == ACTION_SNAPSHOT:
            return SNAPSHOT_LOCKED_REASON if limits.max_snapshots_per_day == 0 else SNAPSHOT_USED_REASON
        if limits.uses_pooled_quota:
            return DAILY_LIMIT_REASON
        if action == ACTION_CHAT:
            return REPORT_CHAT_REASON
        return WEEKLY_REPORT_REASON
