"""
Read-path reconciliation with the billing provider.

Webhooks can be dropped or delayed. On every tier lookup and on each batch
reconciliation pass the provider is queried directly, and the registry is
corrected when the two disagree. This is the only place the provider
outranks the local record.

Failure policy: provider errors never fail the caller's request. The last
known local record is returned and the failure is logged.
"""

import logging
from typing import Callable, Iterable, Optional

from starlette.concurrency import run_in_threadpool

from .errors import UpstreamSyncError
from .integrations.revenuecat import RevenueCatClient, subscription_from_subscriber
from .models import UserSubscription
from .registry import SubscriptionRegistry
from .windows import Clock, utcnow

logger = logging.getLogger(__name__)

ClientFactory = Callable[[], RevenueCatClient]


class ReconciliationSync:
    """Pull-based cross-check of the registry against the provider."""

    def __init__(
        self,
        registry: SubscriptionRegistry,
        client_factory: Optional[ClientFactory] = None,
        entitlement_ids: Iterable[str] = ("pro", "premium"),
        clock: Optional[Clock] = None,
    ) -> None:
        self.registry = registry
        self._client_factory = client_factory
        self._entitlement_ids = tuple(entitlement_ids)
        self._clock = clock or utcnow

    @property
    def enabled(self) -> bool:
        return self._client_factory is not None

    async def sync(self, user_id: str) -> UserSubscription:
        """Query the provider fresh, correct the registry on divergence, return the record."""
        if self._client_factory is None:
            logger.debug("Billing provider not configured, skipping reconciliation", extra={"user_id": user_id})
            return await run_in_threadpool(self.registry.get, user_id)

        observed_at = self._clock()
        try:
            async with self._client_factory() as client:
                data = await client.get_subscriber(user_id)
            if data is None:
                return await run_in_threadpool(self.registry.get, user_id)
            remote = subscription_from_subscriber(
                data,
                self._entitlement_ids,
                observed_at=observed_at,
                now=self._clock(),
            )
        except UpstreamSyncError as e:
            logger.error("Subscription reconciliation failed, using local state", extra={
                "user_id": user_id,
                "error": str(e),
                "status_code": e.status_code,
            })
            return await run_in_threadpool(self.registry.get, user_id)

        # Registry transactions take per-user locks; keep them off the event loop.
        result = await run_in_threadpool(
            self.registry.reconcile, user_id, remote.to_patch(), observed_at=observed_at
        )
        return result.subscription
