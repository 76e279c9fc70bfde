"""
Process-level wiring: pick the store backend once and build the services
on top of it. Shared by the HTTP dependencies, Celery tasks and ops scripts.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

from services.entitlements.access_gate import AccessGate
from services.entitlements.clock import Clock, SystemClock
from services.entitlements.config import EntitlementConfig
from services.entitlements.grandfathering import GrandfatheringManager
from services.entitlements.reconciler import SubscriptionReconciler
from services.entitlements.store import EntitlementStore, InMemoryEntitlementStore
from services.entitlements.usage_ledger import UsageLedger

logger = logging.getLogger(__name__)


@dataclass
class EntitlementServices:
    store: EntitlementStore
    clock: Clock
    config: EntitlementConfig
    ledger: UsageLedger
    grandfathering: GrandfatheringManager
    reconciler: SubscriptionReconciler
    gate: AccessGate


def create_store(backend: str) -> EntitlementStore:
    backend = (backend or "sql").lower()
    if backend == "memory":
        logger.warning("Using in-memory entitlement store; state is lost on restart")
        return InMemoryEntitlementStore()
    if backend == "sql":
        from core.database import SessionLocal
        from services.entitlements.sql_store import SqlEntitlementStore

        return SqlEntitlementStore(SessionLocal)
    raise ValueError(f"Unknown ENTITLEMENT_STORE_BACKEND: {backend}")


def build_services(
    store: EntitlementStore,
    clock: Optional[Clock] = None,
    config: Optional[EntitlementConfig] = None,
) -> EntitlementServices:
    clock = clock or SystemClock()
    config = config or EntitlementConfig()
    ledger = UsageLedger(store, clock, config)
    grandfathering = GrandfatheringManager(store, clock, config)
    reconciler = SubscriptionReconciler(store, clock)
    gate = AccessGate(store, clock, config, ledger=ledger, grandfathering=grandfathering, reconciler=reconciler)
    return EntitlementServices(
        store=store,
        clock=clock,
        config=config,
        ledger=ledger,
        grandfathering=grandfathering,
        reconciler=reconciler,
        gate=gate,
    )


def services_from_settings(settings) -> EntitlementServices:
    return build_services(
        create_store(settings.ENTITLEMENT_STORE_BACKEND),
        SystemClock(),
        EntitlementConfig.from_settings(settings),
    )
