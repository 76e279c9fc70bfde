"""Daily usage accounting: day windows, reservation and finalize."""
import time
from datetime import timedelta
from zoneinfo import ZoneInfo

import pytest

from fixtures.entitlement_fixtures import make_user, utc
from services.entitlements import GenerationType, UsageLedger
from services.entitlements.usage_ledger import day_window


def test_day_window_in_configured_timezone(config):
    ny = config.with_overrides(usage_day_timezone=ZoneInfo("America/New_York"))
    start, end = day_window(utc(2025, 7, 29, 2, 0), ny)
    # 02:00 UTC is still 28 July in New York (UTC-4 in summer).
    assert start == utc(2025, 7, 28, 4, 0)
    assert end == utc(2025, 7, 29, 4, 0)


def test_counts_reset_at_day_boundary(store, clock, config):
    store.create_user(make_user("u1", created_at=utc(2025, 7, 27)))
    ledger = UsageLedger(store, clock, config)

    clock.set(utc(2025, 7, 28, 23, 59))
    ledger.record("u1", GenerationType.AI, {"name": "late"})
    assert ledger.count_today("u1") == 1

    clock.set(utc(2025, 7, 29, 0, 0))
    assert ledger.count_today("u1") == 0
    assert ledger.count_on("u1", utc(2025, 7, 28, 8, 0)) == 1
    assert ledger.next_reset_time() == utc(2025, 7, 30)


def test_reserve_respects_limit(store, clock, config):
    store.create_user(make_user("u1", created_at=utc(2025, 7, 27)))
    ledger = UsageLedger(store, clock, config)

    placeholder, used_before = ledger.reserve("u1", 1)
    assert used_before == 0
    assert placeholder.is_placeholder
    assert placeholder.generation_type == GenerationType.FALLBACK

    second, used = ledger.reserve("u1", 1)
    assert second is None
    assert used == 1


def test_finalize_fills_placeholder_in_place(store, clock, config):
    store.create_user(make_user("u1", created_at=utc(2025, 7, 27)))
    ledger = UsageLedger(store, clock, config)
    placeholder, _ = ledger.reserve("u1", 1)

    clock.advance(timedelta(seconds=5))
    finalized = ledger.finalize("u1", {"name": "Power Builder"}, GenerationType.AI)

    assert finalized.id == placeholder.id
    assert finalized.generation_type == GenerationType.AI
    assert not finalized.is_placeholder
    assert ledger.count_today("u1") == 1


def test_finalize_without_placeholder_appends(store, clock, config):
    store.create_user(make_user("u1", created_at=utc(2025, 7, 27)))
    ledger = UsageLedger(store, clock, config)

    ledger.finalize("u1", {"name": "Total Body"}, GenerationType.FALLBACK)

    assert ledger.count_today("u1") == 1


@pytest.fixture
def host_new_york(monkeypatch):
    if not hasattr(time, "tzset"):
        pytest.skip("time.tzset is not available on this platform")
    monkeypatch.setenv("TZ", "America/New_York")
    time.tzset()
    yield
    monkeypatch.undo()
    time.tzset()


def test_host_local_day_window_spans_dst_change(config, host_new_york):
    local = config.with_overrides(usage_day_timezone=None)
    # 2 November 2025: New York falls back from UTC-4 to UTC-5.
    start, end = day_window(utc(2025, 11, 2, 12, 0), local)
    assert start == utc(2025, 11, 2, 4, 0)
    assert end == utc(2025, 11, 3, 5, 0)
    assert end - start == timedelta(hours=25)
