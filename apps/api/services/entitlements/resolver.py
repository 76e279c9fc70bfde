"""
Entitlement resolver.

Pure decision logic: given a user record, today's usage count, the current
instant and the entitlement config, decide whether the user may generate
another workout. Never raises for business outcomes (quota exhausted,
expired grant); those are expressed in the returned decision.

Tier precedence: premium > grandfathered (including grace) > free.
"""

from __future__ import annotations

import math
from datetime import datetime
from typing import Optional

from services.entitlements.config import EntitlementConfig
from services.entitlements.records import (
    EntitlementDecision,
    ExpirationState,
    ExpirationStatus,
    Tier,
    UserRecord,
)

REASON_DAILY_LIMIT = "Daily limit reached"
REASON_GRANDFATHER_EXPIRED = "Grandfathered access expired"

_DAY_SECONDS = 86400
_HOUR_SECONDS = 3600


def is_grandfathering_eligible(user: UserRecord, config: EntitlementConfig) -> bool:
    """Free tier, registered strictly before the paywall cutoff, feature enabled."""
    if not config.grandfathering_enabled:
        return False
    if user.subscription_tier != Tier.FREE:
        return False
    return user.created_at < config.paywall_introduction_date


def grandfathered_expiry_for(user: UserRecord, config: EntitlementConfig) -> datetime:
    """Expiry is anchored to registration, not to when the grant is applied."""
    return user.created_at + config.grant_duration


def expiration_status(
    grandfathered_until: Optional[datetime], now: datetime, config: EntitlementConfig
) -> ExpirationStatus:
    if grandfathered_until is None:
        return ExpirationStatus(state=ExpirationState.NONE)

    remaining = (grandfathered_until - now).total_seconds()

    if remaining <= 0:
        overdue = -remaining
        if overdue <= config.grace_period.total_seconds():
            return ExpirationStatus(
                state=ExpirationState.GRACE_PERIOD,
                expires_at=grandfathered_until,
                hours_in_grace=int(overdue // _HOUR_SECONDS),
            )
        return ExpirationStatus(state=ExpirationState.EXPIRED, expires_at=grandfathered_until)

    days = math.ceil(remaining / _DAY_SECONDS)
    hours = math.ceil(remaining / _HOUR_SECONDS)
    soon = any(days <= threshold for threshold in config.warning_days)
    return ExpirationStatus(
        state=ExpirationState.EXPIRING_SOON if soon else ExpirationState.ACTIVE,
        expires_at=grandfathered_until,
        days_remaining=days,
        hours_remaining=hours,
    )


def format_time_until_expiration(status: ExpirationStatus) -> str:
    """Human readable expiry text for profile and daily-usage displays."""
    if status.state == ExpirationState.NONE:
        return "No grandfathered access"
    if status.state == ExpirationState.EXPIRED:
        return "Expired"
    if status.state == ExpirationState.GRACE_PERIOD:
        return f"Expired {status.hours_in_grace} hours ago (grace period)"
    if status.state == ExpirationState.EXPIRING_SOON:
        if status.days_remaining <= 1:
            return f"Expires in {status.hours_remaining} hours"
        return f"Expires in {status.days_remaining} days"
    return f"{status.days_remaining} days remaining"


def _free_decision(used_today: int, config: EntitlementConfig) -> EntitlementDecision:
    limit = config.free_daily_limit
    allowed = used_today < limit
    return EntitlementDecision(
        can_generate=allowed,
        tier=Tier.FREE,
        used_today=used_today,
        daily_limit=limit,
        reason=None if allowed else REASON_DAILY_LIMIT,
    )


def resolve(
    user: UserRecord,
    used_today: int,
    now: datetime,
    config: EntitlementConfig,
) -> EntitlementDecision:
    tier = Tier(user.subscription_tier)

    if tier == Tier.PREMIUM:
        return EntitlementDecision(can_generate=True, tier=Tier.PREMIUM, used_today=used_today)

    if tier == Tier.GRANDFATHERED:
        if user.grandfathered_until is None:
            # Grant without an expiry is treated as plain free access.
            return _free_decision(used_today, config)

        status = expiration_status(user.grandfathered_until, now, config)
        if status.state in (ExpirationState.ACTIVE, ExpirationState.EXPIRING_SOON):
            return EntitlementDecision(
                can_generate=True,
                tier=Tier.GRANDFATHERED,
                used_today=used_today,
                expires_at=user.grandfathered_until,
                expiring_soon=status.state == ExpirationState.EXPIRING_SOON,
                expiration=status,
            )
        if status.state == ExpirationState.GRACE_PERIOD:
            return EntitlementDecision(
                can_generate=True,
                tier=Tier.GRANDFATHERED,
                used_today=used_today,
                expires_at=user.grandfathered_until,
                grace_period=True,
                expiration=status,
            )
        return EntitlementDecision(
            can_generate=False,
            tier=Tier.GRANDFATHERED,
            used_today=used_today,
            reason=REASON_GRANDFATHER_EXPIRED,
            expires_at=user.grandfathered_until,
            expiration=status,
            requires_downgrade=True,
        )

    return _free_decision(used_today, config)


def is_cleanup_candidate(user: UserRecord, now: datetime, config: EntitlementConfig) -> bool:
    if user.subscription_tier != Tier.GRANDFATHERED or user.grandfathered_until is None:
        return False
    return user.grandfathered_until < now - config.grace_period


def cleanup_cutoff(now: datetime, config: EntitlementConfig) -> datetime:
    """Grants expiring strictly before this instant are past grace."""
    return now - config.grace_period
