"""
Domain records for the entitlement engine.

Stores hand these plain dataclasses around instead of ORM rows so the resolver,
manager and reconciler stay independent of the persistence backend.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Optional


class Tier(str, Enum):
    FREE = "free"
    GRANDFATHERED = "grandfathered"
    PREMIUM = "premium"


class GenerationType(str, Enum):
    AI = "ai"
    TEMPLATE = "template"
    FALLBACK = "fallback"


class SubscriptionStatus(str, Enum):
    PENDING = "pending"
    ACTIVE = "active"
    CANCELLED = "cancelled"
    SUSPENDED = "suspended"
    EXPIRED = "expired"


class BillingEventType(str, Enum):
    CREATED = "created"
    ACTIVATED = "activated"
    CANCELLED = "cancelled"
    SUSPENDED = "suspended"
    PAYMENT_COMPLETED = "payment_completed"
    PAYMENT_FAILED = "payment_failed"
    EXPIRED = "expired"


class ExpirationState(str, Enum):
    NONE = "none"
    ACTIVE = "active"
    EXPIRING_SOON = "expiring_soon"
    GRACE_PERIOD = "grace_period"
    EXPIRED = "expired"


PRETRACK_MARKER = "pretrack"


@dataclass(frozen=True)
class UserRecord:
    id: str
    email: Optional[str]
    subscription_tier: Tier
    grandfathered_until: Optional[datetime]
    created_at: datetime
    role: str = "user"
    updated_at: Optional[datetime] = None


@dataclass(frozen=True)
class UsageRecord:
    id: str
    user_id: str
    generated_at: datetime
    generation_type: GenerationType
    payload: Optional[Dict[str, Any]] = None

    @property
    def is_placeholder(self) -> bool:
        return bool(self.payload and self.payload.get(PRETRACK_MARKER))


@dataclass(frozen=True)
class SubscriptionRecord:
    id: str
    user_id: str
    external_subscription_id: str
    status: SubscriptionStatus
    external_plan_id: Optional[str] = None
    amount_per_cycle: Optional[Decimal] = None
    currency: Optional[str] = None
    billing_cycle: Optional[str] = None
    trial_end: Optional[datetime] = None
    current_period_start: Optional[datetime] = None
    current_period_end: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    cancel_at_period_end: bool = False
    last_payment_at: Optional[datetime] = None
    last_payment_amount: Optional[Decimal] = None
    payment_failed_at: Optional[datetime] = None
    expired_at: Optional[datetime] = None
    last_event_at: Optional[datetime] = None
    provider_payload: Optional[Dict[str, Any]] = None


@dataclass(frozen=True)
class BillingEvent:
    """Provider-neutral lifecycle event, as produced by the webhook normalizers."""

    event_id: str
    event_type: str
    external_subscription_id: str
    resource: Dict[str, Any] = field(default_factory=dict)
    occurred_at: Optional[datetime] = None
    user_id: Optional[str] = None


@dataclass(frozen=True)
class ExpirationStatus:
    state: ExpirationState
    expires_at: Optional[datetime] = None
    days_remaining: int = 0
    hours_remaining: int = 0
    hours_in_grace: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.state.value,
            "expiresAt": self.expires_at.isoformat() if self.expires_at else None,
            "daysUntilExpiration": self.days_remaining,
            "hoursUntilExpiration": self.hours_remaining,
            "hoursInGrace": self.hours_in_grace,
        }


@dataclass(frozen=True)
class EntitlementDecision:
    can_generate: bool
    tier: Tier
    used_today: int = 0
    daily_limit: Optional[int] = None  # None = unlimited
    reason: Optional[str] = None
    expires_at: Optional[datetime] = None
    grace_period: bool = False
    expiring_soon: bool = False
    expiration: Optional[ExpirationStatus] = None
    # Past-grace grandfathered user; the caller performs the downgrade.
    requires_downgrade: bool = False
    # Placeholder usage record written by the gate, if any.
    reservation_id: Optional[str] = None

    @property
    def unlimited(self) -> bool:
        return self.daily_limit is None

    def to_payload(self) -> Dict[str, Any]:
        """camelCase shape consumed by the web client."""
        return {
            "canGenerate": self.can_generate,
            "tier": self.tier.value,
            "usedToday": self.used_today,
            "dailyLimit": self.daily_limit,
            "reason": self.reason,
            "expiresAt": self.expires_at.isoformat() if self.expires_at else None,
            "gracePeriod": self.grace_period,
            "expiringSoon": self.expiring_soon,
            "expirationStatus": self.expiration.to_dict() if self.expiration else None,
        }


def record_to_dict(record) -> Dict[str, Any]:
    """JSON-friendly dict for admin and report output."""
    out = {}
    for key, value in asdict(record).items():
        if isinstance(value, Enum):
            value = value.value
        elif isinstance(value, datetime):
            value = value.isoformat()
        elif isinstance(value, Decimal):
            value = str(value)
        out[key] = value
    return out
