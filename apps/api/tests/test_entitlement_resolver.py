"""Tier resolution, grandfathering eligibility and expiry status (pure functions)."""
from datetime import timedelta

import pytest

from fixtures.entitlement_fixtures import PAYWALL, make_user, utc
from services.entitlements import Tier
from services.entitlements.records import ExpirationState
from services.entitlements.resolver import (
    REASON_DAILY_LIMIT,
    REASON_GRANDFATHER_EXPIRED,
    cleanup_cutoff,
    expiration_status,
    format_time_until_expiration,
    grandfathered_expiry_for,
    is_cleanup_candidate,
    is_grandfathering_eligible,
    resolve,
)

NOW = utc(2025, 8, 10, 12, 0)


@pytest.mark.parametrize("used_today", [0, 1, 50])
def test_premium_always_generates(config, used_today):
    user = make_user(
        created_at=utc(2025, 1, 1),
        tier=Tier.PREMIUM,
        grandfathered_until=NOW - timedelta(days=90),
    )
    decision = resolve(user, used_today, NOW, config)
    assert decision.can_generate is True
    assert decision.tier == Tier.PREMIUM
    assert decision.unlimited
    assert decision.reason is None


def test_free_user_daily_limit(config):
    user = make_user(created_at=utc(2025, 8, 1))

    first = resolve(user, 0, NOW, config)
    assert first.can_generate is True
    assert first.daily_limit == 1

    second = resolve(user, 1, NOW, config)
    assert second.can_generate is False
    assert second.reason == REASON_DAILY_LIMIT
    assert second.used_today == 1
    assert second.daily_limit == 1


def test_free_limit_follows_config(config):
    user = make_user(created_at=utc(2025, 8, 1))
    relaxed = config.with_overrides(free_daily_limit=3)
    assert resolve(user, 2, NOW, relaxed).can_generate is True
    assert resolve(user, 3, NOW, relaxed).can_generate is False


def test_eligibility_boundary_is_strict(config):
    before = make_user(created_at=PAYWALL - timedelta(seconds=1))
    at = make_user(created_at=PAYWALL)
    after = make_user(created_at=PAYWALL + timedelta(seconds=1))
    assert is_grandfathering_eligible(before, config) is True
    assert is_grandfathering_eligible(at, config) is False
    assert is_grandfathering_eligible(after, config) is False


def test_eligibility_requires_free_tier_and_enabled_flag(config):
    early = make_user(created_at=utc(2025, 7, 1))
    assert is_grandfathering_eligible(early, config.with_overrides(grandfathering_enabled=False)) is False
    premium = make_user(created_at=utc(2025, 7, 1), tier=Tier.PREMIUM)
    assert is_grandfathering_eligible(premium, config) is False


def test_expiry_is_anchored_to_registration(config):
    user = make_user(created_at=utc(2025, 7, 20))
    assert grandfathered_expiry_for(user, config) == utc(2025, 8, 19)


def test_grandfathered_active_is_unlimited(config):
    user = make_user(created_at=utc(2025, 7, 20), tier=Tier.GRANDFATHERED, grandfathered_until=NOW + timedelta(days=20))
    decision = resolve(user, 5, NOW, config)
    assert decision.can_generate is True
    assert decision.tier == Tier.GRANDFATHERED
    assert decision.unlimited
    assert decision.expiring_soon is False
    assert decision.expiration.state == ExpirationState.ACTIVE


def test_grandfathered_expiring_soon(config):
    user = make_user(created_at=utc(2025, 7, 20), tier=Tier.GRANDFATHERED, grandfathered_until=NOW + timedelta(days=2, hours=1))
    decision = resolve(user, 0, NOW, config)
    assert decision.can_generate is True
    assert decision.expiring_soon is True
    assert decision.expiration.days_remaining == 3


def test_grace_period_still_generates(config):
    user = make_user(created_at=utc(2025, 7, 1), tier=Tier.GRANDFATHERED, grandfathered_until=NOW - timedelta(hours=23))
    decision = resolve(user, 3, NOW, config)
    assert decision.can_generate is True
    assert decision.grace_period is True
    assert decision.expiration.hours_in_grace == 23
    assert is_cleanup_candidate(user, NOW, config) is False


def test_past_grace_is_denied_and_cleanup_candidate(config):
    user = make_user(created_at=utc(2025, 7, 1), tier=Tier.GRANDFATHERED, grandfathered_until=NOW - timedelta(hours=25))
    decision = resolve(user, 0, NOW, config)
    assert decision.can_generate is False
    assert decision.reason == REASON_GRANDFATHER_EXPIRED
    assert decision.requires_downgrade is True
    assert is_cleanup_candidate(user, NOW, config) is True


def test_grace_boundary_is_inclusive(config):
    until = NOW - config.grace_period
    status = expiration_status(until, NOW, config)
    assert status.state == ExpirationState.GRACE_PERIOD
    assert status.hours_in_grace == 24
    assert not until < cleanup_cutoff(NOW, config)


def test_grandfathered_without_expiry_is_treated_as_free(config):
    user = make_user(created_at=utc(2025, 7, 1), tier=Tier.GRANDFATHERED, grandfathered_until=None)
    decision = resolve(user, 1, NOW, config)
    assert decision.tier == Tier.FREE
    assert decision.can_generate is False
    assert decision.reason == REASON_DAILY_LIMIT


@pytest.mark.parametrize(
    "offset, expected",
    [
        (timedelta(days=10), "10 days remaining"),
        (timedelta(days=4, hours=1), "Expires in 5 days"),
        (timedelta(hours=5, minutes=30), "Expires in 6 hours"),
        (-timedelta(hours=3, minutes=10), "Expired 3 hours ago (grace period)"),
        (-timedelta(hours=30), "Expired"),
    ],
)
def test_time_until_expiration_text(config, offset, expected):
    status = expiration_status(NOW + offset, NOW, config)
    assert format_time_until_expiration(status) == expected


def test_no_grant_text(config):
    assert format_time_until_expiration(expiration_status(None, NOW, config)) == "No grandfathered access"


def test_payload_is_camel_case(config):
    user = make_user(created_at=utc(2025, 8, 1))
    payload = resolve(user, 1, NOW, config).to_payload()
    assert payload["canGenerate"] is False
    assert payload["usedToday"] == 1
    assert payload["dailyLimit"] == 1
    assert payload["reason"] == REASON_DAILY_LIMIT
    assert payload["tier"] == "free"
