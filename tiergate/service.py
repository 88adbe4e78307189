"""
Entitlement service: the single object the HTTP layer and workers talk to.

Gated actions follow check -> act -> record:
    decision = service.check_report(user_id)
    if decision.allowed:
        ...generate the report...
        service.record_report_created(user_id)

Recording re-checks the ceiling inside the ledger transaction, so two callers
that both passed the check cannot overspend; the loser gets a denial back.
"""

import logging
from typing import Iterable, Optional

from starlette.concurrency import run_in_threadpool

from .config import Settings, load_settings
from .engine import (
    ACTION_CHAT,
    ACTION_REPORT,
    ACTION_SNAPSHOT,
    EntitlementEngine,
    TierInfo,
    effective_tier,
)
from .integrations.revenuecat import RevenueCatClient
from .ledger import UsageLedger
from .loader import TierCatalog
from .models import Decision, ModelDecision, Tier, UserSubscription
from .reconcile import ClientFactory, ReconciliationSync
from .registry import SubscriptionRegistry
from .store import InMemorySubscriptionStore, InMemoryUsageStore, SubscriptionStore, UsageStore
from .webhooks import WebhookIngress, WebhookResult
from .windows import Clock, utcnow

logger = logging.getLogger(__name__)


class EntitlementService:
    def __init__(
        self,
        catalog: Optional[TierCatalog] = None,
        usage_store: Optional[UsageStore] = None,
        subscription_store: Optional[SubscriptionStore] = None,
        *,
        client_factory: Optional[ClientFactory] = None,
        entitlement_ids: Iterable[str] = ("pro", "premium"),
        webhook_secret: Optional[str] = None,
        production: bool = False,
        reconcile_on_read: bool = True,
        clock: Optional[Clock] = None,
    ) -> None:
        self._clock = clock or utcnow
        self.catalog = catalog or TierCatalog()
        self.registry = SubscriptionRegistry(subscription_store or InMemorySubscriptionStore(), clock=self._clock)
        self.ledger = UsageLedger(
            usage_store or InMemoryUsageStore(),
            self.catalog,
            tier_resolver=self.effective_tier,
            clock=self._clock,
        )
        self.engine = EntitlementEngine(self.catalog, self.registry, self.ledger, clock=self._clock)
        self.reconciler = ReconciliationSync(
            self.registry,
            client_factory=client_factory,
            entitlement_ids=entitlement_ids,
            clock=self._clock,
        )
        self.webhooks = WebhookIngress(self.registry, secret=webhook_secret, production=production)
        self.reconcile_on_read = reconcile_on_read

    def effective_tier(self, user_id: str) -> Tier:
        return effective_tier(self.registry.get(user_id), self._clock())

    # -- Queries ---------------------------------------------------------

    async def get_tier_info(self, user_id: str) -> TierInfo:
        """Tier, limits and remaining quota; reconciles with the provider first when enabled."""
        if self.reconcile_on_read:
            subscription = await self.reconciler.sync(user_id)
        else:
            subscription = await run_in_threadpool(self.registry.get, user_id)
        return await run_in_threadpool(self.engine.tier_info, user_id, subscription)

    def check_report(self, user_id: str) -> Decision:
        return self.engine.can_create_report(user_id)

    def check_chat(self, user_id: str, report_id: str) -> Decision:
        return self.engine.can_send_chat_message(user_id, report_id)

    def check_snapshot(self, user_id: str) -> Decision:
        return self.engine.can_use_snapshot(user_id)

    def max_days(self, user_id: str) -> int:
        return self.engine.max_data_days(user_id)

    def check_model(self, user_id: str, model_id: str) -> ModelDecision:
        return self.engine.is_model_allowed(user_id, model_id)

    def get_subscription(self, user_id: str) -> UserSubscription:
        return self.registry.get(user_id)

    # -- Recording (after the action succeeded) --------------------------

    def record_report_created(self, user_id: str) -> Decision:
        tier = self.effective_tier(user_id)
        outcome = self.ledger.consume_report(user_id, tier=tier)
        return self.engine.decide_outcome(tier, ACTION_REPORT, outcome)

    def record_chat_message(self, user_id: str, report_id: str) -> Decision:
        tier = self.effective_tier(user_id)
        outcome = self.ledger.consume_report_chat(user_id, report_id, tier=tier)
        return self.engine.decide_outcome(tier, ACTION_CHAT, outcome)

    def record_snapshot_used(self, user_id: str) -> Decision:
        tier = self.effective_tier(user_id)
        outcome = self.ledger.consume_snapshot(user_id, tier=tier)
        return self.engine.decide_outcome(tier, ACTION_SNAPSHOT, outcome)

    # -- Writers ---------------------------------------------------------

    def handle_webhook(self, raw_body: bytes, signature: Optional[str]) -> WebhookResult:
        return self.webhooks.handle(raw_body, signature)

    async def reconcile(self, user_id: str) -> UserSubscription:
        return await self.reconciler.sync(user_id)

    def set_tier(self, user_id: str, tier: Tier) -> UserSubscription:
        return self.registry.set_tier(user_id, tier)


def build_service(settings: Optional[Settings] = None, clock: Optional[Clock] = None) -> EntitlementService:
    """
    Assemble a service from settings.

    Stores: SQL when DATABASE_URL is set, otherwise in-memory subscriptions
    with a Redis ledger when REDIS_URL is set, otherwise fully in-memory.
    """
    settings = settings or load_settings()

    if settings.tier_config_path:
        catalog = TierCatalog.from_file(settings.tier_config_path)
    else:
        catalog = TierCatalog()

    if settings.database_url:
        from .db import create_session_factory
        from .sql_store import SqlSubscriptionStore, SqlUsageStore

        session_factory = create_session_factory(settings.database_url)
        usage_store: UsageStore = SqlUsageStore(session_factory)
        subscription_store: SubscriptionStore = SqlSubscriptionStore(session_factory)
        backend = "sql"
    elif settings.redis_url:
        from .redis_store import RedisUsageStore

        usage_store = RedisUsageStore(settings.redis_url)
        subscription_store = InMemorySubscriptionStore()
        backend = "redis"
    else:
        usage_store = InMemoryUsageStore()
        subscription_store = InMemorySubscriptionStore()
        backend = "memory"

    client_factory: Optional[ClientFactory] = None
    if settings.revenuecat_api_key:
        api_key = settings.revenuecat_api_key
        api_base = settings.revenuecat_api_base

        def client_factory() -> RevenueCatClient:
            return RevenueCatClient(api_key, api_base=api_base)
    else:
        logger.warning("REVENUECAT_API_KEY not set - provider reconciliation disabled")

    logger.info("Entitlement service configured", extra={
        "store_backend": backend,
        "environment": settings.environment,
        "reconcile_on_read": settings.reconcile_on_read,
        "tiers": [tier.value for tier in catalog.tiers()],
    })

    return EntitlementService(
        catalog,
        usage_store,
        subscription_store,
        client_factory=client_factory,
        entitlement_ids=settings.entitlement_ids,
        webhook_secret=settings.webhook_secret,
        production=settings.is_production,
        reconcile_on_read=settings.reconcile_on_read,
        clock=clock,
    )
