"""
Workout entitlement engine.

Tier resolution, grandfathering grant/expiry, daily usage accounting and
billing lifecycle reconciliation. HTTP routes and Celery tasks are thin
wrappers over the classes exported here.
"""

from services.entitlements.access_gate import AccessGate
from services.entitlements.clock import Clock, FixedClock, SystemClock
from services.entitlements.config import EntitlementConfig
from services.entitlements.errors import (
    EntitlementError,
    MalformedEvent,
    NotFound,
    Unauthenticated,
    UnknownEvent,
    UpstreamUnavailable,
)
from services.entitlements.grandfathering import GrandfatheringManager
from services.entitlements.reconciler import SubscriptionReconciler
from services.entitlements.records import (
    BillingEvent,
    BillingEventType,
    EntitlementDecision,
    GenerationType,
    SubscriptionRecord,
    SubscriptionStatus,
    Tier,
    UsageRecord,
    UserRecord,
)
from services.entitlements.resolver import resolve
from services.entitlements.store import EntitlementStore, InMemoryEntitlementStore
from services.entitlements.usage_ledger import UsageLedger

__all__ = [
    "AccessGate",
    "BillingEvent",
    "BillingEventType",
    "Clock",
    "EntitlementConfig",
    "EntitlementDecision",
    "EntitlementError",
    "EntitlementStore",
    "FixedClock",
    "GenerationType",
    "GrandfatheringManager",
    "InMemoryEntitlementStore",
    "MalformedEvent",
    "NotFound",
    "SubscriptionReconciler",
    "SubscriptionRecord",
    "SubscriptionStatus",
    "SystemClock",
    "Tier",
    "Unauthenticated",
    "UnknownEvent",
    "UpstreamUnavailable",
    "UsageLedger",
    "UsageRecord",
    "UserRecord",
    "resolve",
]
