"""Access gate: provisioning, check-and-reserve and the end-to-end entitlement flows."""
import threading
from datetime import timedelta

import pytest

from core.auth import Identity
from fixtures.entitlement_fixtures import make_user, utc
from services.entitlements import BillingEvent, GenerationType, NotFound, Tier
from services.entitlements.resolver import REASON_DAILY_LIMIT, REASON_GRANDFATHER_EXPIRED


def _identity(user_id, created_at):
    return Identity(id=user_id, email=f"{user_id}@example.com", created_at=created_at)


def test_first_touch_provisions_free_user(services):
    identity = _identity("new", utc(2025, 7, 27, 8, 0))

    decision = services.gate.evaluate("new", identity)

    user = services.store.get_user("new")
    assert user.subscription_tier == Tier.FREE
    assert user.created_at == identity.created_at
    assert decision.tier == Tier.FREE
    assert decision.daily_limit == 1


def test_unknown_user_without_identity(services):
    with pytest.raises(NotFound):
        services.gate.check_and_reserve("ghost")


def test_pre_paywall_user_is_auto_granted_and_unlimited(services, clock):
    clock.set(utc(2025, 7, 28, 9, 0))
    identity = _identity("early", utc(2025, 7, 20))

    for _ in range(3):
        decision = services.gate.check_and_reserve("early", identity)
        assert decision.can_generate is True
        services.gate.finalize(decision, "early", {"name": "Iron Core"}, GenerationType.AI)

    user = services.store.get_user("early")
    assert user.subscription_tier == Tier.GRANDFATHERED
    assert user.grandfathered_until == utc(2025, 8, 19)
    assert decision.tier == Tier.GRANDFATHERED
    assert decision.unlimited
    assert decision.reservation_id is None
    assert services.ledger.count_today("early") == 3


def test_post_paywall_user_gets_one_workout_per_day(services, clock):
    identity = _identity("late", utc(2025, 7, 27))

    first = services.gate.check_and_reserve("late", identity)
    assert first.can_generate is True
    assert first.used_today == 1
    assert first.reservation_id is not None
    services.gate.finalize(first, "late", {"name": "Total Body"}, GenerationType.AI)

    second = services.gate.check_and_reserve("late", identity)
    assert second.can_generate is False
    assert second.reason == REASON_DAILY_LIMIT
    assert second.used_today == 1
    assert second.daily_limit == 1
    assert services.ledger.count_today("late") == 1

    clock.advance(timedelta(days=1))
    assert services.gate.check_and_reserve("late", identity).can_generate is True


def test_failed_generation_still_consumes_the_slot(services):
    identity = _identity("late", utc(2025, 7, 27))
    first = services.gate.check_and_reserve("late", identity)
    assert first.can_generate is True
    # No finalize: the generation call blew up.
    assert services.gate.check_and_reserve("late", identity).can_generate is False


def test_expired_grandfathered_user_is_denied_then_cleaned_up(services, clock):
    now = clock.now()
    services.store.create_user(
        make_user("lapsed", created_at=utc(2025, 6, 1), tier=Tier.GRANDFATHERED, grandfathered_until=now - timedelta(hours=30))
    )

    decision = services.gate.evaluate("lapsed")
    assert decision.can_generate is False
    assert decision.reason == REASON_GRANDFATHER_EXPIRED
    assert services.store.get_user("lapsed").subscription_tier == Tier.GRANDFATHERED

    result = services.grandfathering.cleanup_expired()

    assert result["cleaned"] == 1
    user = services.store.get_user("lapsed")
    assert user.subscription_tier == Tier.FREE
    assert user.grandfathered_until is None


def test_check_and_reserve_downgrades_past_grace(services, clock):
    services.store.create_user(
        make_user("lapsed", created_at=utc(2025, 6, 1), tier=Tier.GRANDFATHERED, grandfathered_until=clock.now() - timedelta(hours=30))
    )

    decision = services.gate.check_and_reserve("lapsed")

    # Downgraded, then judged as free on the same request.
    assert decision.can_generate is True
    assert decision.tier == Tier.FREE
    assert decision.used_today == 1
    assert decision.reservation_id is not None
    user = services.store.get_user("lapsed")
    assert user.subscription_tier == Tier.FREE
    assert user.grandfathered_until is None

    again = services.gate.check_and_reserve("lapsed")
    assert again.can_generate is False
    assert again.reason == REASON_DAILY_LIMIT


def test_check_and_reserve_past_grace_with_quota_spent_is_denied(services, clock):
    services.store.create_user(
        make_user("spent", created_at=utc(2025, 6, 1), tier=Tier.GRANDFATHERED, grandfathered_until=clock.now() - timedelta(hours=30))
    )
    services.ledger.record("spent", GenerationType.AI, {"title": "earlier"})

    decision = services.gate.check_and_reserve("spent")

    assert decision.can_generate is False
    assert decision.tier == Tier.FREE
    assert decision.reason == REASON_DAILY_LIMIT
    assert services.store.get_user("spent").subscription_tier == Tier.FREE


def test_grace_period_user_still_generates(services, clock):
    services.store.create_user(
        make_user("grace", created_at=utc(2025, 6, 1), tier=Tier.GRANDFATHERED, grandfathered_until=clock.now() - timedelta(hours=23))
    )
    decision = services.gate.check_and_reserve("grace")
    assert decision.can_generate is True
    assert decision.grace_period is True


def test_premium_with_lapsed_cancellation_is_downgraded_on_access(services, clock):
    services.store.create_user(make_user("paid", created_at=utc(2025, 7, 27)))
    services.reconciler.apply(
        BillingEvent("evt_1", "activated", "sub_1", {"current_period_end": clock.now() + timedelta(days=2)}, user_id="paid")
    )
    services.reconciler.apply(BillingEvent("evt_2", "cancelled", "sub_1"))
    assert services.gate.evaluate("paid").tier == Tier.PREMIUM

    clock.advance(timedelta(days=3))
    decision = services.gate.evaluate("paid")
    assert decision.tier == Tier.FREE
    assert decision.daily_limit == 1


def test_concurrent_reservations_allow_only_one(services):
    identity = _identity("racer", utc(2025, 7, 27))
    services.gate.provision(identity)
    barrier = threading.Barrier(8)
    results = []
    lock = threading.Lock()

    def attempt():
        barrier.wait()
        decision = services.gate.check_and_reserve("racer", identity)
        with lock:
            results.append(decision.can_generate)

    threads = [threading.Thread(target=attempt) for _ in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert results.count(True) == 1
    assert services.ledger.count_today("racer") == 1


def test_finalize_never_raises(services, monkeypatch):
    identity = _identity("late", utc(2025, 7, 27))
    decision = services.gate.check_and_reserve("late", identity)

    def broken(*args, **kwargs):
        raise RuntimeError("store down")

    monkeypatch.setattr(services.ledger, "finalize", broken)
    services.gate.finalize(decision, "late", {"name": "x"}, GenerationType.AI)


def test_daily_usage_shape(services, clock):
    identity = _identity("late", utc(2025, 7, 27))
    decision = services.gate.check_and_reserve("late", identity)
    services.gate.finalize(decision, "late", {"name": "Total Body"}, GenerationType.AI)

    usage = services.gate.daily_usage("late", identity)

    assert usage["canGenerate"] is False
    assert usage["tier"] == "free"
    assert usage["usedToday"] == 1
    assert usage["dailyLimit"] == 1
    assert usage["nextResetTime"] == utc(2025, 7, 29).isoformat()
    assert usage["timeUntilExpiration"] is None
