"""
Immutable entitlement configuration.

Every resolver/manager call takes one of these explicitly so tests can vary
the paywall cutoff, durations and thresholds per case.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, timezone, tzinfo
from typing import Optional, Tuple
from zoneinfo import ZoneInfo

DEFAULT_PAYWALL_INTRODUCTION_DATE = datetime(2025, 7, 26, tzinfo=timezone.utc)


@dataclass(frozen=True)
class EntitlementConfig:
    paywall_introduction_date: datetime = DEFAULT_PAYWALL_INTRODUCTION_DATE
    grandfathering_enabled: bool = True
    grant_duration_days: int = 30
    grace_period: timedelta = timedelta(hours=24)
    warning_days: Tuple[int, ...] = (7, 3, 1)
    auto_cleanup_enabled: bool = True
    send_notifications: bool = False
    free_daily_limit: int = 1
    # None = host local time
    usage_day_timezone: Optional[tzinfo] = field(default=None)

    def __post_init__(self) -> None:
        if self.paywall_introduction_date.tzinfo is None:
            raise ValueError("paywall_introduction_date must be timezone-aware")
        if self.grant_duration_days < 1:
            raise ValueError("grant_duration_days must be positive")
        if self.grace_period < timedelta(0):
            raise ValueError("grace_period must not be negative")
        if self.free_daily_limit < 0:
            raise ValueError("free_daily_limit must not be negative")
        thresholds = tuple(sorted({int(d) for d in self.warning_days if int(d) > 0}))
        object.__setattr__(self, "warning_days", thresholds)

    @property
    def grant_duration(self) -> timedelta:
        return timedelta(days=self.grant_duration_days)

    def with_overrides(self, **changes) -> "EntitlementConfig":
        return replace(self, **changes)

    @classmethod
    def from_settings(cls, settings) -> "EntitlementConfig":
        tz_name = (settings.USAGE_DAY_TIMEZONE or "").strip()
        return cls(
            paywall_introduction_date=settings.PAYWALL_INTRODUCTION_DATE,
            grandfathering_enabled=settings.GRANDFATHERING_ENABLED,
            grant_duration_days=settings.GRANDFATHERED_DURATION_DAYS,
            grace_period=timedelta(hours=settings.GRANDFATHERING_GRACE_PERIOD_HOURS),
            warning_days=tuple(settings.grandfathering_warning_days),
            auto_cleanup_enabled=settings.GRANDFATHERING_AUTO_CLEANUP_ENABLED,
            send_notifications=settings.GRANDFATHERING_SEND_NOTIFICATIONS,
            free_daily_limit=settings.FREE_DAILY_GENERATION_LIMIT,
            usage_day_timezone=ZoneInfo(tz_name) if tz_name else None,
        )
