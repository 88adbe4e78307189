"""
Tests for the usage ledger.

Covers:
1. Check-and-increment against each tier ceiling
2. Daily/weekly rollover, including idempotent and read-only rollover
3. Concurrency exactness: K callers against R remaining -> exactly R successes
4. Report chat counters (per report on the entry tier, pooled on the paid tier)
"""

import threading

import pytest

from conftest import FakeClock
from tiergate.ledger import UsageLedger
from tiergate.loader import TierCatalog
from tiergate.models import Resource, Tier, UsageRecord, WindowKind
from tiergate.store import InMemoryUsageStore, UserLocks


def make_ledger(clock, tier=Tier.FREE, store=None):
    return UsageLedger(
        store or InMemoryUsageStore(),
        TierCatalog(),
        tier_resolver=lambda user_id: tier,
        clock=clock,
    )


# ---------------------------------------------------------------------------
# Ceilings
# ---------------------------------------------------------------------------

def test_free_tier_one_report_per_week(clock):
    ledger = make_ledger(clock)

    first = ledger.consume_report("u1")
    second = ledger.consume_report("u1")

    assert first.allowed and first.remaining == 0 and first.limit == 1
    assert not second.allowed and second.remaining == 0


def test_paid_tier_pool_of_ten(clock):
    ledger = make_ledger(clock, tier=Tier.PAID)

    outcomes = [ledger.consume_report("u1") for _ in range(11)]

    assert [o.allowed for o in outcomes] == [True] * 10 + [False]
    assert outcomes[9].remaining == 0
    assert ledger.usage("u1").communications_today == 10


def test_unmetered_resource_always_denied(clock):
    ledger = make_ledger(clock, tier=Tier.FREE)
    outcome = ledger.try_consume("u1", Resource.SNAPSHOT)
    assert not outcome.allowed
    assert outcome.limit == 0


def test_snapshot_independent_of_pool(clock):
    ledger = make_ledger(clock, tier=Tier.PAID)
    for _ in range(10):
        assert ledger.consume_report("u1").allowed

    assert ledger.consume_snapshot("u1").allowed
    assert not ledger.consume_snapshot("u1").allowed


def test_denial_does_not_increment(clock):
    ledger = make_ledger(clock)
    ledger.consume_report("u1")
    ledger.consume_report("u1")
    ledger.consume_report("u1")
    assert ledger.usage("u1").reports_this_week == 1


def test_explicit_tier_overrides_resolver(clock):
    ledger = make_ledger(clock, tier=Tier.FREE)
    assert ledger.peek("u1", Resource.COMMUNICATION, tier=Tier.PAID) == 10


def test_window_mismatch_rejected(clock):
    ledger = make_ledger(clock)
    with pytest.raises(ValueError, match="daily"):
        ledger.try_consume("u1", Resource.SNAPSHOT, WindowKind.WEEKLY)


def test_report_chat_not_consumable_as_generic_counter(clock):
    ledger = make_ledger(clock)
    with pytest.raises(ValueError):
        ledger.try_consume("u1", Resource.REPORT_CHAT)


def test_blank_user_id_rejected(clock):
    ledger = make_ledger(clock)
    with pytest.raises(ValueError, match="user_id"):
        ledger.consume_report("  ")


# ---------------------------------------------------------------------------
# Rollover
# ---------------------------------------------------------------------------

def test_daily_rollover_resets_pool_not_week(clock):
    free = make_ledger(clock, tier=Tier.FREE)
    free.consume_report("u1")

    clock.advance(days=1)

    assert not free.consume_report("u1").allowed
    assert free.usage("u1").reports_this_week == 1


def test_daily_rollover_restores_paid_pool(clock):
    ledger = make_ledger(clock, tier=Tier.PAID)
    for _ in range(10):
        ledger.consume_report("u1")
    assert ledger.peek("u1", Resource.COMMUNICATION) == 0

    clock.advance(days=1)

    assert ledger.peek("u1", Resource.COMMUNICATION) == 10
    assert ledger.consume_report("u1").remaining == 9


def test_weekly_rollover_on_monday_utc(clock):
    ledger = make_ledger(clock)
    ledger.consume_report("u1")

    # Sunday 23:59 UTC is still the same week.
    clock.now = clock.now.replace(day=8, hour=23, minute=59)
    assert ledger.peek("u1", Resource.WEEKLY_REPORT) == 0

    clock.advance(minutes=1)
    assert ledger.peek("u1", Resource.WEEKLY_REPORT) == 1


def test_rollover_is_idempotent():
    record = UsageRecord(
        user_id="u1",
        day="2026-03-03",
        week_start="2026-02-23",
        communications_today=4,
        snapshots_today=1,
        reports_this_week=1,
    )
    once = record.rolled_over("2026-03-04", "2026-03-02")
    twice = once.rolled_over("2026-03-04", "2026-03-02")

    assert once == twice
    assert once.communications_today == 0
    assert once.reports_this_week == 0


def test_peek_does_not_persist_rollover(clock):
    store = InMemoryUsageStore()
    ledger = make_ledger(clock, tier=Tier.PAID, store=store)
    ledger.consume_report("u1")

    clock.advance(days=1)
    ledger.peek("u1", Resource.COMMUNICATION)
    ledger.usage("u1")

    assert store.read("u1").day == "2026-03-04"
    assert store.read("u1").communications_today == 1


# ---------------------------------------------------------------------------
# Concurrency
# ---------------------------------------------------------------------------

@pytest.mark.parametrize("callers", [11, 25])
def test_concurrent_consumption_is_exact(clock, callers):
    ledger = make_ledger(clock, tier=Tier.PAID)
    barrier = threading.Barrier(callers)
    results = []
    results_lock = threading.Lock()

    def worker():
        barrier.wait()
        outcome = ledger.consume_report("u1")
        with results_lock:
            results.append(outcome.allowed)

    threads = [threading.Thread(target=worker) for _ in range(callers)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert results.count(True) == 10
    assert ledger.usage("u1").communications_today == 10


def test_concurrent_users_do_not_share_quota(clock):
    ledger = make_ledger(clock)
    threads = [threading.Thread(target=ledger.consume_report, args=(f"u{i}",)) for i in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert all(ledger.usage(f"u{i}").reports_this_week == 1 for i in range(8))


def test_failed_transaction_leaves_counters_untouched():
    store = InMemoryUsageStore()

    with pytest.raises(RuntimeError):
        with store.transaction("u1") as txn:
            txn.save(UsageRecord(user_id="u1", day="2026-03-04", week_start="2026-03-02", reports_this_week=1))
            raise RuntimeError("action failed")

    assert store.read("u1") is None


def test_user_locks_released_after_use():
    locks = UserLocks()

    with locks.hold("u1"):
        with locks.hold("u2"):
            assert len(locks) == 2
    assert len(locks) == 0

    with pytest.raises(RuntimeError):
        with locks.hold("u1"):
            raise RuntimeError("action failed")
    assert len(locks) == 0


def test_user_lock_shared_with_waiters():
    locks = UserLocks()
    held = threading.Event()
    inside = []

    def waiter():
        held.wait(5)
        with locks.hold("u1"):
            inside.append("u1")

    thread = threading.Thread(target=waiter)
    with locks.hold("u1"):
        thread.start()
        held.set()
        thread.join(0.2)
        assert thread.is_alive()
        assert inside == []
    thread.join()

    assert inside == ["u1"]
    assert len(locks) == 0


# ---------------------------------------------------------------------------
# Report chat
# ---------------------------------------------------------------------------

def test_free_tier_one_chat_per_report(clock):
    ledger = make_ledger(clock)

    assert ledger.consume_report_chat("u1", "r1").allowed
    assert not ledger.consume_report_chat("u1", "r1").allowed
    assert ledger.consume_report_chat("u1", "r2").allowed


def test_free_tier_chat_counter_never_resets():
    clock = FakeClock()
    ledger = make_ledger(clock)
    ledger.consume_report_chat("u1", "r1")

    clock.advance(days=30)

    assert ledger.peek_report_chat("u1", "r1") == 0


def test_paid_chat_spends_pool_and_report_counter(clock):
    store = InMemoryUsageStore()
    ledger = make_ledger(clock, tier=Tier.PAID, store=store)

    for _ in range(3):
        assert ledger.consume_report_chat("u1", "r1").allowed
    ledger.consume_report("u1")

    assert store.read_report_chats("u1", "r1") == 3
    assert ledger.peek("u1", Resource.COMMUNICATION) == 6
    assert ledger.peek_report_chat("u1", "r1") == 6


def test_paid_chat_denied_when_pool_exhausted(clock):
    store = InMemoryUsageStore()
    ledger = make_ledger(clock, tier=Tier.PAID, store=store)
    for _ in range(10):
        ledger.consume_report("u1")

    outcome = ledger.consume_report_chat("u1", "r1")

    assert not outcome.allowed
    assert store.read_report_chats("u1", "r1") == 0
