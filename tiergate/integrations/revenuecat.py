"""
RevenueCat REST API client for subscriber lookups.

Used by reconciliation to read the provider's authoritative view of a user's
subscription. Only the subscriber endpoint is used; purchases and pricing are
handled entirely by the provider.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, Optional
from urllib.parse import quote

import httpx

from tiergate.config import DEFAULT_REVENUECAT_API_BASE
from tiergate.errors import UpstreamSyncError
from tiergate.models import SubscriptionStatus, Tier
from tiergate.registry import SubscriptionPatch

logger = logging.getLogger(__name__)


class RevenueCatError(UpstreamSyncError):
    """Error from the RevenueCat REST API."""

    def __init__(self, message: str, status_code: Optional[int] = None, details: Optional[Dict] = None):
        super().__init__(message, status_code=status_code)
        self.details = details or {}


@dataclass(frozen=True)
class ProviderSubscription:
    """Provider-side subscription state, captured at observed_at."""

    tier: Tier
    status: SubscriptionStatus
    current_period_end: Optional[datetime]
    cancel_at_period_end: bool
    observed_at: datetime

    def to_patch(self) -> SubscriptionPatch:
        return SubscriptionPatch(
            tier=self.tier,
            status=self.status,
            current_period_end=self.current_period_end,
            cancel_at_period_end=self.cancel_at_period_end,
        )


class RevenueCatClient:
    """
    Async client for the RevenueCat v1 subscriber API.

    Every call performs a fresh request; responses are never cached.
    """

    def __init__(
        self,
        api_key: str,
        api_base: str = DEFAULT_REVENUECAT_API_BASE,
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        if not api_key:
            raise ValueError("api_key is required")
        self.api_base = api_base.rstrip("/")
        self._client = httpx.AsyncClient(
            headers={
                "Authorization": f"Bearer {api_key}",
                "Content-Type": "application/json",
            },
            timeout=timeout,
            transport=transport,
        )

    async def close(self):
        """Close the HTTP client."""
        await self._client.aclose()

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    async def get_subscriber(self, app_user_id: str) -> Optional[Dict[str, Any]]:
        """
        Fetch subscriber info.

        Returns:
            Decoded response body, or None when the subscriber does not exist

        Raises:
            RevenueCatError: on transport failures and non-404 error statuses
        """
        url = f"{self.api_base}/subscribers/{quote(app_user_id, safe='')}"

        try:
            response = await self._client.get(url)
            if response.status_code == 404:
                logger.info("RevenueCat subscriber not found", extra={"user_id": app_user_id})
                return None
            response.raise_for_status()
            data = response.json()
        except httpx.HTTPStatusError as e:
            logger.error("RevenueCat API HTTP error", extra={
                "user_id": app_user_id,
                "status_code": e.response.status_code,
                "response": e.response.text[:500],
            })
            raise RevenueCatError(
                f"RevenueCat API error: {e.response.status_code}",
                status_code=e.response.status_code,
            )
        except httpx.RequestError as e:
            logger.error("RevenueCat API request error", extra={
                "user_id": app_user_id,
                "error": str(e),
            })
            raise RevenueCatError(f"Request failed: {str(e)}")
        except ValueError as e:
            raise RevenueCatError(f"Invalid JSON from RevenueCat: {str(e)}")

        if not isinstance(data, dict) or not isinstance(data.get("subscriber"), dict):
            raise RevenueCatError("RevenueCat response is missing subscriber", details={"body": data})
        return data


def _parse_date(value: Any) -> Optional[datetime]:
    if not value:
        return None
    parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _map_subscriber(
    data: Dict[str, Any],
    entitlement_ids: Iterable[str],
    observed_at: datetime,
    now: Optional[datetime] = None,
) -> ProviderSubscription:
    now = now or observed_at
    subscriber = data.get("subscriber") or {}
    entitlements = subscriber.get("entitlements") or {}
    subscriptions = subscriber.get("subscriptions") or {}

    lapsed_product: Optional[str] = None
    for entitlement_id in entitlement_ids:
        entitlement = entitlements.get(entitlement_id)
        if not entitlement:
            continue

        expires_at = _parse_date(entitlement.get("expires_date"))
        product = entitlement.get("product_identifier")
        if expires_at is not None and expires_at <= now:
            lapsed_product = lapsed_product or product
            continue

        product_info = subscriptions.get(product) or {}
        if product_info.get("unsubscribe_detected_at"):
            status = SubscriptionStatus.CANCELLED
        elif product_info.get("period_type") == "trial":
            status = SubscriptionStatus.TRIALING
        else:
            status = SubscriptionStatus.ACTIVE

        return ProviderSubscription(
            tier=Tier.PAID,
            status=status,
            current_period_end=expires_at,
            cancel_at_period_end=status is SubscriptionStatus.CANCELLED,
            observed_at=observed_at,
        )

    status = SubscriptionStatus.ACTIVE
    if lapsed_product and (subscriptions.get(lapsed_product) or {}).get("billing_issues_detected_at"):
        status = SubscriptionStatus.PAST_DUE

    return ProviderSubscription(
        tier=Tier.FREE,
        status=status,
        current_period_end=None,
        cancel_at_period_end=False,
        observed_at=observed_at,
    )


def subscription_from_subscriber(
    data: Dict[str, Any],
    entitlement_ids: Iterable[str],
    observed_at: datetime,
    now: Optional[datetime] = None,
) -> ProviderSubscription:
    """
    Map a subscriber response onto the local subscription fields.

    - Active entitlement (no expiry or expiry in the future) -> paid
      - unsubscribe detected on its product -> cancelled, cancel at period end
      - trial period -> trialing
    - Otherwise -> free; past_due if the lapsed product reports a billing issue

    Raises:
        RevenueCatError: the response does not have the expected shape
    """
    try:
        return _map_subscriber(data, entitlement_ids, observed_at, now)
    except (ValueError, TypeError, AttributeError) as e:
        raise RevenueCatError(f"Unexpected subscriber payload: {str(e)}", details={"body": data}) from e
