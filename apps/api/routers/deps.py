"""
API dependencies (shared DI).

The store backend, clock and entitlement config are process singletons.
Tests replace them through app.dependency_overrides.
"""

from functools import lru_cache

from fastapi import Depends

from core.config import settings
from core.exceptions import ServiceUnavailableError
from services.entitlements import (
    AccessGate,
    Clock,
    EntitlementConfig,
    EntitlementStore,
    GrandfatheringManager,
    SubscriptionReconciler,
    SystemClock,
)
from services.entitlements.factory import build_services, create_store
from services.billing_provider import BillingProvider
from services.workout_generation import WorkoutGenerator


@lru_cache
def get_store() -> EntitlementStore:
    return create_store(settings.ENTITLEMENT_STORE_BACKEND)


@lru_cache
def get_clock() -> Clock:
    return SystemClock()


@lru_cache
def get_entitlement_config() -> EntitlementConfig:
    return EntitlementConfig.from_settings(settings)


def get_access_gate(
    store: EntitlementStore = Depends(get_store),
    clock: Clock = Depends(get_clock),
    config: EntitlementConfig = Depends(get_entitlement_config),
) -> AccessGate:
    return build_services(store, clock, config).gate


def get_grandfathering_manager(
    store: EntitlementStore = Depends(get_store),
    clock: Clock = Depends(get_clock),
    config: EntitlementConfig = Depends(get_entitlement_config),
) -> GrandfatheringManager:
    return build_services(store, clock, config).grandfathering


def get_reconciler(
    store: EntitlementStore = Depends(get_store),
    clock: Clock = Depends(get_clock),
) -> SubscriptionReconciler:
    return SubscriptionReconciler(store, clock)


def get_billing_provider() -> BillingProvider:
    from services.stripe_service import StripeBillingProvider

    try:
        return StripeBillingProvider()
    except RuntimeError as e:
        raise ServiceUnavailableError(str(e))


@lru_cache
def get_workout_generator() -> WorkoutGenerator:
    return WorkoutGenerator()
