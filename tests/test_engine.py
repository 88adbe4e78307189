"""
Tests for entitlement decisions through the service facade.

Covers the free-tier report/chat rules, the paid-tier pooled cap,
snapshot independence, cancelled-within-period access and model forcing.
"""

from datetime import timedelta

import pytest

from conftest import BASE_TIME
from tiergate.engine import (
    DAILY_LIMIT_REASON,
    REPORT_CHAT_REASON,
    SNAPSHOT_LOCKED_REASON,
    SNAPSHOT_USED_REASON,
    WEEKLY_REPORT_REASON,
    effective_tier,
)
from tiergate.loader import GEMINI_FLASH, GEMINI_PRO
from tiergate.models import SubscriptionStatus, Tier, UserSubscription
from tiergate.registry import SubscriptionPatch


def make_paid(service, user_id="u1", **overrides):
    fields = dict(
        tier=Tier.PAID,
        status=SubscriptionStatus.ACTIVE,
        current_period_end=BASE_TIME + timedelta(days=30),
        cancel_at_period_end=False,
    )
    fields.update(overrides)
    service.registry.apply(user_id, SubscriptionPatch(**fields))


# ---------------------------------------------------------------------------
# effective_tier
# ---------------------------------------------------------------------------

@pytest.mark.parametrize(
    "status, period_end, expected",
    [
        (SubscriptionStatus.ACTIVE, None, Tier.PAID),
        (SubscriptionStatus.PAST_DUE, None, Tier.PAID),
        (SubscriptionStatus.TRIALING, None, Tier.PAID),
        (SubscriptionStatus.CANCELLED, BASE_TIME + timedelta(days=3), Tier.PAID),
        (SubscriptionStatus.CANCELLED, BASE_TIME, Tier.FREE),
        (SubscriptionStatus.CANCELLED, BASE_TIME - timedelta(seconds=1), Tier.FREE),
        (SubscriptionStatus.CANCELLED, None, Tier.FREE),
    ],
)
def test_effective_tier_for_paid_record(status, period_end, expected):
    sub = UserSubscription(user_id="u1", tier=Tier.PAID, status=status, current_period_end=period_end)
    assert effective_tier(sub, BASE_TIME) is expected


def test_free_record_is_always_free():
    sub = UserSubscription(user_id="u1", tier=Tier.FREE, current_period_end=BASE_TIME + timedelta(days=3))
    assert effective_tier(sub, BASE_TIME) is Tier.FREE


def test_cancelled_paid_keeps_access_until_period_end(service, clock):
    make_paid(service, status=SubscriptionStatus.CANCELLED, cancel_at_period_end=True,
              current_period_end=BASE_TIME + timedelta(days=2))

    assert service.effective_tier("u1") is Tier.PAID
    assert service.max_days("u1") == 360

    clock.advance(days=2)
    assert service.effective_tier("u1") is Tier.FREE
    assert service.max_days("u1") == 30


# ---------------------------------------------------------------------------
# Free tier
# ---------------------------------------------------------------------------

def test_free_tier_report_then_weekly_denial(service):
    assert service.check_report("u1").allowed

    recorded = service.record_report_created("u1")
    assert recorded.allowed and recorded.remaining == 0

    decision = service.check_report("u1")
    assert not decision.allowed
    assert decision.reason == WEEKLY_REPORT_REASON
    assert decision.upgrade_required is True


def test_free_tier_one_follow_up_per_report(service):
    assert service.check_chat("u1", "r1").allowed
    service.record_chat_message("u1", "r1")

    decision = service.check_chat("u1", "r1")
    assert not decision.allowed
    assert decision.reason == REPORT_CHAT_REASON
    assert decision.upgrade_required is True
    assert service.check_chat("u1", "r2").allowed


def test_free_tier_snapshot_locked(service):
    decision = service.check_snapshot("u1")
    assert not decision.allowed
    assert decision.reason == SNAPSHOT_LOCKED_REASON
    assert decision.upgrade_required is True


def test_recording_past_the_ceiling_is_denied(service):
    service.record_report_created("u1")
    decision = service.record_report_created("u1")
    assert not decision.allowed
    assert decision.upgrade_required


# ---------------------------------------------------------------------------
# Paid tier
# ---------------------------------------------------------------------------

def test_paid_tier_pooled_cap(service):
    make_paid(service)

    for i in range(10):
        if i % 2:
            service.record_report_created("u1")
        else:
            service.record_chat_message("u1", "r1")

    decision = service.check_report("u1")
    assert not decision.allowed
    assert decision.reason == DAILY_LIMIT_REASON
    assert decision.upgrade_required is False
    assert not service.check_chat("u1", "r2").allowed


def test_paid_tier_remaining_counts_down(service):
    make_paid(service)
    service.record_report_created("u1")
    service.record_chat_message("u1", "r1")

    assert service.check_report("u1").remaining == 8
    assert service.check_chat("u1", "r1").remaining == 8


def test_paid_snapshot_independent_of_pool(service):
    make_paid(service)
    for _ in range(10):
        service.record_report_created("u1")

    assert service.check_snapshot("u1").allowed
    assert service.record_snapshot_used("u1").allowed

    decision = service.check_snapshot("u1")
    assert not decision.allowed
    assert decision.reason == SNAPSHOT_USED_REASON
    assert decision.upgrade_required is False


def test_paid_pool_resets_next_day(service, clock):
    make_paid(service)
    for _ in range(10):
        service.record_report_created("u1")

    clock.advance(days=1)
    assert service.check_report("u1").remaining == 10


def test_downgrade_applies_free_limits_immediately(service):
    make_paid(service)
    for _ in range(3):
        service.record_report_created("u1")

    service.set_tier("u1", Tier.FREE)

    # Pooled usage does not count against the weekly report ceiling.
    assert service.check_report("u1").allowed
    assert not service.check_snapshot("u1").allowed


# ---------------------------------------------------------------------------
# Models and tier info
# ---------------------------------------------------------------------------

def test_free_tier_pro_model_forced_to_flash(service):
    decision = service.check_model("u1", GEMINI_PRO)
    assert not decision.allowed
    assert decision.forced_model == GEMINI_FLASH
    assert decision.to_dict() == {"allowed": False, "forcedModel": GEMINI_FLASH}


def test_paid_tier_pro_model_allowed(service):
    make_paid(service)
    assert service.check_model("u1", GEMINI_PRO).to_dict() == {"allowed": True}


@pytest.mark.asyncio
async def test_tier_info_free(service):
    service.record_report_created("u1")

    info = (await service.get_tier_info("u1")).to_dict()

    assert info["tier"] == "free"
    assert info["maxDataDays"] == 30
    assert info["usage"]["reportsRemaining"] == 0
    assert info["usage"]["chatEnabled"] is True
    assert info["usage"]["snapshotEnabled"] is False
    assert "llmCommunicationsRemaining" not in info["usage"]
    assert info["limits"]["dataRangeOptions"] == [7, 30]
    assert info["subscription"]["status"] == "active"


@pytest.mark.asyncio
async def test_tier_info_paid(service):
    make_paid(service)
    service.record_chat_message("u1", "r1")

    info = (await service.get_tier_info("u1")).to_dict()

    assert info["tier"] == "paid"
    assert info["usage"]["llmCommunicationsRemaining"] == 9
    assert info["usage"]["reportsRemaining"] == 9
    assert info["usage"]["snapshotsRemaining"] == 1
    assert info["allowedModels"] == sorted([GEMINI_FLASH, GEMINI_PRO])
