"""
Tests for webhook ingress.

Covers:
1. HMAC-SHA256 signature verification
2. Event parsing and the closed event taxonomy
3. The transition table, including billing-issue -> renewal recovery
4. Idempotent replay and sandbox filtering
"""

import json
from datetime import timedelta

import pytest

from conftest import BASE_TIME
from tiergate.errors import AuthError, ValidationError
from tiergate.events import BillingEventType, parse_event, patch_for
from tiergate.models import SubscriptionStatus, Tier
from tiergate.registry import SubscriptionRegistry
from tiergate.store import InMemorySubscriptionStore
from tiergate.webhooks import WebhookIngress, compute_signature, verify_signature

SECRET = "whsec_test"
PERIOD_END = BASE_TIME + timedelta(days=30)


def _ms(dt):
    return int(dt.timestamp() * 1000)


def make_body(event_type, user_id="u1", expiration=PERIOD_END, event_at=None, **extra):
    event = {"type": event_type, "app_user_id": user_id, **extra}
    if expiration is not None:
        event["expiration_at_ms"] = _ms(expiration)
    if event_at is not None:
        event["event_timestamp_ms"] = _ms(event_at)
    return json.dumps({"api_version": "1.0", "event": event}).encode()


@pytest.fixture
def registry(clock):
    return SubscriptionRegistry(InMemorySubscriptionStore(), clock=clock)


@pytest.fixture
def ingress(registry):
    return WebhookIngress(registry, secret=SECRET)


def deliver(ingress, body):
    return ingress.handle(body, compute_signature(body, SECRET))


# ---------------------------------------------------------------------------
# Signatures
# ---------------------------------------------------------------------------

def test_valid_signature_accepted():
    body = b'{"event": {}}'
    assert verify_signature(body, compute_signature(body, SECRET), SECRET)


def test_tampered_body_rejected():
    signature = compute_signature(b'{"a": 1}', SECRET)
    assert not verify_signature(b'{"a": 2}', signature, SECRET)


def test_missing_signature_rejected_when_secret_set():
    assert not verify_signature(b"{}", None, SECRET)


def test_no_secret_skips_verification():
    assert verify_signature(b"{}", None, None)


def test_signature_comparison_is_constant_time(monkeypatch):
    calls = []
    import tiergate.webhooks as webhooks

    real = webhooks.hmac.compare_digest

    def spy(a, b):
        calls.append((a, b))
        return real(a, b)

    monkeypatch.setattr(webhooks.hmac, "compare_digest", spy)
    body = b"{}"
    verify_signature(body, compute_signature(body, SECRET), SECRET)
    assert len(calls) == 1


def test_bad_signature_raises_before_state_change(ingress, registry):
    with pytest.raises(AuthError) as exc_info:
        ingress.handle(make_body("INITIAL_PURCHASE"), "deadbeef")

    assert exc_info.value.status_code == 401
    assert registry.store.get("u1") is None


# ---------------------------------------------------------------------------
# Parsing
# ---------------------------------------------------------------------------

def test_invalid_json_is_validation_error(ingress):
    with pytest.raises(ValidationError):
        deliver(ingress, b"not json")


def test_missing_user_is_validation_error(ingress):
    body = json.dumps({"event": {"type": "RENEWAL"}}).encode()
    with pytest.raises(ValidationError) as exc_info:
        deliver(ingress, body)
    assert exc_info.value.field == "event.app_user_id"


def test_unknown_event_type_is_acknowledged(ingress, registry):
    result = deliver(ingress, make_body("TEMPORARY_ENTITLEMENT_GRANT"))

    assert result.event_type is BillingEventType.UNKNOWN
    assert not result.applied
    assert result.to_response() == {"success": True}
    assert registry.store.get("u1") is None


def test_parse_event_reads_timestamps_and_sandbox():
    event = parse_event(json.loads(make_body("RENEWAL", event_at=BASE_TIME, environment="SANDBOX")))
    assert event.type is BillingEventType.RENEWAL
    assert event.expiration_at == PERIOD_END.replace(microsecond=0)
    assert event.event_at == BASE_TIME
    assert event.is_sandbox


@pytest.mark.parametrize("value", [1e20, float("nan"), float("inf"), -1e18, 10 ** 400, "1700000000000", True])
def test_unusable_timestamp_is_validation_error(value):
    payload = {"event": {"type": "RENEWAL", "app_user_id": "u1", "expiration_at_ms": value}}

    with pytest.raises(ValidationError) as exc_info:
        parse_event(payload)

    assert exc_info.value.field == "event.expiration_at_ms"


@pytest.mark.parametrize("flag", ["false", "true", 1, None])
def test_sandbox_requires_literal_true(flag):
    event = parse_event({"event": {"type": "RENEWAL", "app_user_id": "u1", "is_sandbox": flag}})
    assert not event.is_sandbox

@pytest.mark.parametrize(
    "event_type, tier, status",
    [
        ("INITIAL_PURCHASE", Tier.PAID, SubscriptionStatus.ACTIVE),
        ("RENEWAL", Tier.PAID, SubscriptionStatus.ACTIVE),
        ("UNCANCELLATION", Tier.PAID, SubscriptionStatus.ACTIVE),
        ("EXPIRATION", Tier.FREE, SubscriptionStatus.ACTIVE),
        ("BILLING_ISSUE", Tier.FREE, SubscriptionStatus.PAST_DUE),
    ],
)
def test_transition_table(event_type, tier, status):
    patch = patch_for(parse_event(json.loads(make_body(event_type))))
    assert patch.tier is tier
    assert patch.status is status


def test_cancellation_keeps_tier_and_sets_flag():
    patch = patch_for(parse_event(json.loads(make_body("CANCELLATION"))))
    fields = patch.fields()
    assert "tier" not in fields
    assert fields["status"] is SubscriptionStatus.CANCELLED
    assert fields["cancel_at_period_end"] is True


def test_product_change_is_noop():
    assert patch_for(parse_event(json.loads(make_body("PRODUCT_CHANGE")))) is None


# ---------------------------------------------------------------------------
# Processing
# ---------------------------------------------------------------------------

def test_initial_purchase_grants_paid(ingress, registry):
    result = deliver(ingress, make_body("INITIAL_PURCHASE"))

    assert result.applied
    sub = registry.get("u1")
    assert sub.tier is Tier.PAID
    assert sub.status is SubscriptionStatus.ACTIVE
    assert sub.current_period_end == PERIOD_END.replace(microsecond=0)


def test_replayed_delivery_is_idempotent(ingress, registry, clock):
    body = make_body("INITIAL_PURCHASE", event_at=BASE_TIME)
    deliver(ingress, body)
    first = registry.get("u1")

    clock.advance(minutes=5)
    result = deliver(ingress, body)

    assert result.applied
    assert registry.get("u1") == first


def test_billing_issue_then_renewal_restores_paid(ingress, registry, clock):
    deliver(ingress, make_body("INITIAL_PURCHASE", event_at=BASE_TIME))

    clock.advance(days=1)
    deliver(ingress, make_body("BILLING_ISSUE", event_at=clock.now))
    assert registry.get("u1").tier is Tier.FREE
    assert registry.get("u1").status is SubscriptionStatus.PAST_DUE

    clock.advance(days=1)
    new_end = clock.now + timedelta(days=30)
    deliver(ingress, make_body("RENEWAL", expiration=new_end, event_at=clock.now))
    sub = registry.get("u1")
    assert sub.tier is Tier.PAID
    assert sub.status is SubscriptionStatus.ACTIVE
    assert sub.current_period_end == new_end.replace(microsecond=0)


def test_late_delivery_of_older_event_is_ignored(ingress, registry):
    deliver(ingress, make_body("RENEWAL", event_at=BASE_TIME))
    result = deliver(ingress, make_body("EXPIRATION", event_at=BASE_TIME - timedelta(days=2)))

    assert result.stale
    assert registry.get("u1").tier is Tier.PAID


def test_sandbox_skipped_in_production(registry):
    ingress = WebhookIngress(registry, secret=SECRET, production=True)
    result = deliver(ingress, make_body("INITIAL_PURCHASE", is_sandbox=True))

    assert result.skipped
    assert result.to_response() == {"success": True, "skipped": True}
    assert registry.store.get("u1") is None


def test_sandbox_applied_outside_production(ingress, registry):
    deliver(ingress, make_body("INITIAL_PURCHASE", is_sandbox=True))
    assert registry.get("u1").tier is Tier.PAID
