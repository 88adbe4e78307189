"""
Billing provider event taxonomy.

The provider sends an open-ended JSON envelope:

    {"api_version": "1.0", "event": {"type": "RENEWAL", "app_user_id": "...",
     "expiration_at_ms": 1767225600000, "event_timestamp_ms": ..., "is_sandbox": false, ...}}

parse_event() narrows it to a BillingEvent whose type is a closed enum.
Types outside the taxonomy become BillingEventType.UNKNOWN with the raw
string kept for logging; they are acknowledged without mutating state.

TRANSITIONS maps each type to the SubscriptionPatch it produces (or None for
events that carry no state change).
"""

import math
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, Mapping, Optional

from .errors import ValidationError
from .models import SubscriptionStatus, Tier
from .registry import SubscriptionPatch


class BillingEventType(str, Enum):
    INITIAL_PURCHASE = "INITIAL_PURCHASE"
    RENEWAL = "RENEWAL"
    UNCANCELLATION = "UNCANCELLATION"
    CANCELLATION = "CANCELLATION"
    EXPIRATION = "EXPIRATION"
    BILLING_ISSUE = "BILLING_ISSUE"
    PRODUCT_CHANGE = "PRODUCT_CHANGE"
    SUBSCRIBER_ALIAS = "SUBSCRIBER_ALIAS"
    UNKNOWN = "UNKNOWN"


@dataclass(frozen=True)
class BillingEvent:
    type: BillingEventType
    raw_type: str
    app_user_id: str
    expiration_at: Optional[datetime] = None
    event_at: Optional[datetime] = None
    is_sandbox: bool = False
    product_id: Optional[str] = None
    environment: Optional[str] = None

    @property
    def is_known(self) -> bool:
        return self.type is not BillingEventType.UNKNOWN


def _from_ms(value: Any, field: str) -> Optional[datetime]:
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, (int, float)) or (
        isinstance(value, float) and not math.isfinite(value)
    ):
        raise ValidationError(f"{field} must be a millisecond timestamp", field=field)
    try:
        return datetime.fromtimestamp(value / 1000, tz=timezone.utc)
    except (OverflowError, OSError, ValueError):
        raise ValidationError(f"{field} is out of range", field=field) from None


def parse_event(payload: Any) -> BillingEvent:
    """Validate the webhook envelope. Raises ValidationError before any state is touched."""
    if not isinstance(payload, Mapping):
        raise ValidationError("Invalid payload: expected a JSON object")

    event = payload.get("event")
    if not isinstance(event, Mapping):
        raise ValidationError("Invalid payload: missing event", field="event")

    raw_type = event.get("type")
    if not isinstance(raw_type, str) or not raw_type.strip():
        raise ValidationError("Invalid payload: missing event type", field="event.type")

    app_user_id = event.get("app_user_id")
    if not isinstance(app_user_id, str) or not app_user_id.strip():
        raise ValidationError("Invalid payload: missing app_user_id", field="event.app_user_id")

    raw_type = raw_type.strip().upper()
    try:
        event_type = BillingEventType(raw_type)
    except ValueError:
        event_type = BillingEventType.UNKNOWN

    return BillingEvent(
        type=event_type,
        raw_type=raw_type,
        app_user_id=app_user_id.strip(),
        expiration_at=_from_ms(event.get("expiration_at_ms"), "event.expiration_at_ms"),
        event_at=_from_ms(event.get("event_timestamp_ms"), "event.event_timestamp_ms"),
        is_sandbox=event.get("is_sandbox") is True or event.get("environment") == "SANDBOX",
        product_id=event.get("product_id"),
        environment=event.get("environment"),
    )


def _grant(event: BillingEvent) -> SubscriptionPatch:
    return SubscriptionPatch(
        tier=Tier.PAID,
        status=SubscriptionStatus.ACTIVE,
        current_period_end=event.expiration_at,
        cancel_at_period_end=False,
    )


def _cancel(event: BillingEvent) -> SubscriptionPatch:
    return SubscriptionPatch(
        status=SubscriptionStatus.CANCELLED,
        current_period_end=event.expiration_at,
        cancel_at_period_end=True,
    )


def _revoke(status: SubscriptionStatus) -> Callable[[BillingEvent], SubscriptionPatch]:
    def patch(event: BillingEvent) -> SubscriptionPatch:
        return SubscriptionPatch(
            tier=Tier.FREE,
            status=status,
            current_period_end=None,
            cancel_at_period_end=False,
        )

    return patch


def _no_change(event: BillingEvent) -> None:
    return None


TRANSITIONS: Dict[BillingEventType, Callable[[BillingEvent], Optional[SubscriptionPatch]]] = {
    BillingEventType.INITIAL_PURCHASE: _grant,
    BillingEventType.RENEWAL: _grant,
    BillingEventType.UNCANCELLATION: _grant,
    BillingEventType.CANCELLATION: _cancel,
    BillingEventType.EXPIRATION: _revoke(SubscriptionStatus.ACTIVE),
    BillingEventType.BILLING_ISSUE: _revoke(SubscriptionStatus.PAST_DUE),
    # Plan changes arrive again as RENEWAL for the new product.
    BillingEventType.PRODUCT_CHANGE: _no_change,
    BillingEventType.SUBSCRIBER_ALIAS: _no_change,
    BillingEventType.UNKNOWN: _no_change,
}


def patch_for(event: BillingEvent) -> Optional[SubscriptionPatch]:
    return TRANSITIONS[event.type](event)
