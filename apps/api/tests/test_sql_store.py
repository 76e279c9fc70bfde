"""SQLAlchemy store against SQLite: the same contract the in-memory store honors."""
from datetime import timedelta
from decimal import Decimal
from unittest.mock import MagicMock

import pytest
from sqlalchemy.exc import OperationalError

from fixtures.entitlement_fixtures import make_user, utc
from services.entitlements import (
    BillingEvent,
    GenerationType,
    NotFound,
    SubscriptionStatus,
    Tier,
    UpstreamUnavailable,
)
from services.entitlements.factory import build_services
from services.entitlements.sql_store import SqlEntitlementStore


def test_user_round_trip_keeps_utc(sql_store):
    created = utc(2025, 7, 20, 15, 30)
    sql_store.create_user(make_user("u1", created_at=created))

    user = sql_store.get_user("u1")

    assert user.created_at == created
    assert user.created_at.tzinfo is not None
    assert user.subscription_tier == Tier.FREE


def test_create_user_returns_existing_row(sql_store):
    first = sql_store.create_user(make_user("u1", created_at=utc(2025, 7, 20)))
    second = sql_store.create_user(make_user("u1", created_at=utc(2025, 8, 1)))
    assert second.created_at == first.created_at


def test_update_missing_user(sql_store):
    with pytest.raises(NotFound):
        sql_store.update_user("missing", subscription_tier=Tier.PREMIUM)


def test_list_users_filters(sql_store):
    sql_store.create_user(make_user("a", created_at=utc(2025, 7, 1)))
    sql_store.create_user(make_user("b", created_at=utc(2025, 7, 30)))
    sql_store.create_user(
        make_user("c", created_at=utc(2025, 6, 1), tier=Tier.GRANDFATHERED, grandfathered_until=utc(2025, 7, 1))
    )

    early_free = sql_store.list_users(tier=Tier.FREE, created_before=utc(2025, 7, 26))
    expired = sql_store.list_users(tier=Tier.GRANDFATHERED, grandfathered_until_before=utc(2025, 7, 2))

    assert [u.id for u in early_free] == ["a"]
    assert [u.id for u in expired] == ["c"]
    assert [u.id for u in sql_store.list_users()] == ["c", "a", "b"]


@pytest.mark.parametrize("store_fixture", ["store", "sql_store"])
def test_admin_search_queries(request, store_fixture, clock, config):
    store = request.getfixturevalue(store_fixture)
    store.create_user(make_user("alice", created_at=utc(2025, 7, 1)))
    store.create_user(make_user("bob", created_at=utc(2025, 7, 2)))
    store.create_user(make_user("alfred", created_at=utc(2025, 7, 3)))

    assert [u.id for u in store.list_users(email_contains="AL")] == ["alice", "alfred"]
    assert [u.id for u in store.list_users(limit=2)] == ["alice", "bob"]

    ledger = build_services(store, clock, config).ledger
    for hour in (8, 9, 10):
        clock.set(utc(2025, 7, 28, hour, 0))
        ledger.record("bob", GenerationType.AI, {"hour": hour})

    recent = store.list_recent_usage("bob", 2)
    assert [r.payload["hour"] for r in recent] == [10, 9]
    assert store.list_recent_usage("alice", 10) == []


def test_conditional_downgrade(sql_store):
    now = utc(2025, 7, 28)
    sql_store.create_user(
        make_user("c", created_at=utc(2025, 6, 1), tier=Tier.GRANDFATHERED, grandfathered_until=now - timedelta(hours=30))
    )
    cutoff = now - timedelta(hours=24)

    assert sql_store.downgrade_expired_grandfathered("c", cutoff, now) is True
    assert sql_store.downgrade_expired_grandfathered("c", cutoff, now) is False
    user = sql_store.get_user("c")
    assert user.subscription_tier == Tier.FREE
    assert user.grandfathered_until is None


def test_reserve_and_count_usage(sql_store, clock, config):
    sql_store.create_user(make_user("u1", created_at=utc(2025, 7, 27)))
    services = build_services(sql_store, clock, config)

    placeholder, used = services.ledger.reserve("u1", 1)
    assert placeholder is not None
    assert used == 0
    assert services.ledger.reserve("u1", 1) == (None, 1)

    finalized = services.ledger.finalize("u1", {"name": "Iron Core"}, GenerationType.AI)
    assert finalized.id == placeholder.id
    assert finalized.payload == {"name": "Iron Core"}
    assert services.ledger.count_today("u1") == 1


def test_reserve_for_missing_user(sql_store, clock, config):
    services = build_services(sql_store, clock, config)
    with pytest.raises(NotFound):
        services.ledger.reserve("ghost", 1)


def test_event_claims_are_unique(sql_store):
    assert sql_store.claim_event("evt_1", "activated", "sub_1") is True
    assert sql_store.claim_event("evt_1", "activated", "sub_1") is False
    sql_store.release_event("evt_1")
    assert sql_store.claim_event("evt_1", "activated", "sub_1") is True


def test_reconciler_on_sql_store(sql_store, clock, config):
    services = build_services(sql_store, clock, config)
    sql_store.create_user(make_user("u1", created_at=utc(2025, 7, 27)))

    services.reconciler.apply(
        BillingEvent(
            "evt_1",
            "activated",
            "sub_1",
            {"current_period_end": clock.now() + timedelta(days=30), "amount": "9.99", "currency": "usd"},
            user_id="u1",
        )
    )

    sub = sql_store.get_subscription_by_external_id("sub_1")
    assert sub.status == SubscriptionStatus.ACTIVE
    assert sub.amount_per_cycle == Decimal("9.99")
    assert sub.currency == "USD"
    assert sub.current_period_end == clock.now() + timedelta(days=30)
    assert sql_store.get_user("u1").subscription_tier == Tier.PREMIUM
    assert [s.id for s in sql_store.list_subscriptions(user_id="u1", status=SubscriptionStatus.ACTIVE)] == [sub.id]


def test_driver_errors_become_upstream_unavailable():
    session = MagicMock()
    session.get.side_effect = OperationalError("SELECT 1", {}, Exception("connection refused"))
    store = SqlEntitlementStore(lambda: session)

    with pytest.raises(UpstreamUnavailable):
        store.get_user("u1")
    session.rollback.assert_called_once()
    session.close.assert_called_once()
