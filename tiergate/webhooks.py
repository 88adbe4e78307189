"""
Webhook ingress for billing provider events.

SECURITY:
- Signatures are HMAC-SHA256 over the raw request body, hex encoded
- Comparison uses hmac.compare_digest (constant time)
- With no secret configured verification is skipped; that posture is for
  local development only and is logged on every event
"""

import hashlib
import hmac
import json
import logging
from dataclasses import dataclass
from typing import Optional

from .errors import AuthError, ValidationError
from .events import BillingEvent, BillingEventType, parse_event, patch_for
from .models import UserSubscription
from .registry import SubscriptionRegistry

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class WebhookResult:
    event_type: BillingEventType
    user_id: str
    skipped: bool = False
    applied: bool = False
    stale: bool = False
    subscription: Optional[UserSubscription] = None

    def to_response(self) -> dict:
        body: dict = {"success": True}
        if self.skipped:
            body["skipped"] = True
        return body


def compute_signature(payload: bytes, secret: str) -> str:
    return hmac.new(secret.encode("utf-8"), payload, hashlib.sha256).hexdigest()


def verify_signature(payload: bytes, signature: Optional[str], secret: Optional[str]) -> bool:
    """
    Verify a hex HMAC-SHA256 signature over the raw payload.

    Returns True without checking when no secret is configured.
    """
    if not secret:
        logger.warning("Webhook secret not configured - skipping signature verification")
        return True
    if not signature:
        return False

    expected = compute_signature(payload, secret)
    return hmac.compare_digest(expected.encode("ascii"), signature.strip().lower().encode("ascii", "replace"))


class WebhookIngress:
    """Authenticates provider events and turns them into registry mutations."""

    def __init__(
        self,
        registry: SubscriptionRegistry,
        *,
        secret: Optional[str] = None,
        production: bool = False,
    ) -> None:
        self.registry = registry
        self._secret = secret
        self._production = production

    @property
    def verifies_signatures(self) -> bool:
        return bool(self._secret)

    def matches_secret(self, secret: Optional[str]) -> bool:
        return (self._secret or None) == (secret or None)

    def handle(self, raw_body: bytes, signature: Optional[str]) -> WebhookResult:
        """
        Verify, parse and apply one webhook delivery.

        Raises:
            AuthError: signature mismatch
            ValidationError: body is not a well-formed event
            PersistenceError: the registry store failed (provider should retry)
        """
        if not verify_signature(raw_body, signature, self._secret):
            logger.warning("Invalid webhook signature")
            raise AuthError("Invalid signature", status_code=401)

        try:
            payload = json.loads(raw_body)
        except (json.JSONDecodeError, UnicodeDecodeError):
            logger.error("Invalid webhook JSON payload")
            raise ValidationError("Invalid JSON payload") from None

        event = parse_event(payload)
        return self.process(event)

    def process(self, event: BillingEvent) -> WebhookResult:
        log_extra = {
            "event_type": event.raw_type,
            "user_id": event.app_user_id,
            "is_sandbox": event.is_sandbox,
        }

        if self._production and event.is_sandbox:
            logger.info("Skipping sandbox event in production", extra=log_extra)
            return WebhookResult(event_type=event.type, user_id=event.app_user_id, skipped=True)

        if not event.is_known:
            logger.warning("Unhandled billing event type", extra=log_extra)
            return WebhookResult(event_type=event.type, user_id=event.app_user_id)

        patch = patch_for(event)
        if patch is None:
            logger.info("Billing event requires no subscription change", extra=log_extra)
            return WebhookResult(event_type=event.type, user_id=event.app_user_id)

        result = self.registry.apply(event.app_user_id, patch, event_at=event.event_at)
        logger.info("Billing event processed", extra={
            **log_extra,
            "changed": result.changed,
            "stale": result.stale,
            "tier": result.subscription.tier.value,
            "status": result.subscription.status.value,
        })
        return WebhookResult(
            event_type=event.type,
            user_id=event.app_user_id,
            applied=not result.stale,
            stale=result.stale,
            subscription=result.subscription,
        )
