"""Builders shared by the entitlement tests."""

from datetime import datetime, timezone

from services.entitlements import Tier, UserRecord

PAYWALL = datetime(2025, 7, 26, tzinfo=timezone.utc)


def utc(*args) -> datetime:
    return datetime(*args, tzinfo=timezone.utc)


def make_user(
    user_id: str = "user-1",
    *,
    created_at: datetime,
    tier: Tier = Tier.FREE,
    grandfathered_until=None,
) -> UserRecord:
    return UserRecord(
        id=user_id,
        email=f"{user_id}@example.com",
        subscription_tier=tier,
        grandfathered_until=grandfathered_until,
        created_at=created_at,
    )
