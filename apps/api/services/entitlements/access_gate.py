"""
Access gate: the single entry point before a quota-limited action.

check_and_reserve() resolves the caller's entitlement (after the opportunistic
auto-grant) and, for free-tier callers, atomically reserves a usage slot by
writing a placeholder record. The caller later finalizes the placeholder with
the generated workout. A failed generation still consumes its slot.
"""

from __future__ import annotations

import logging
from dataclasses import replace
from datetime import datetime
from typing import Any, Dict, Optional

from services.entitlements.clock import Clock
from services.entitlements.config import EntitlementConfig
from services.entitlements.errors import NotFound
from services.entitlements.grandfathering import GrandfatheringManager
from services.entitlements.reconciler import SubscriptionReconciler
from services.entitlements.records import EntitlementDecision, GenerationType, Tier, UserRecord
from services.entitlements.resolver import expiration_status, format_time_until_expiration, resolve
from services.entitlements.store import EntitlementStore
from services.entitlements.usage_ledger import UsageLedger

logger = logging.getLogger(__name__)


class AccessGate:
    def __init__(
        self,
        store: EntitlementStore,
        clock: Clock,
        config: EntitlementConfig,
        ledger: Optional[UsageLedger] = None,
        grandfathering: Optional[GrandfatheringManager] = None,
        reconciler: Optional[SubscriptionReconciler] = None,
    ) -> None:
        self.store = store
        self.clock = clock
        self.config = config
        self.ledger = ledger or UsageLedger(store, clock, config)
        self.grandfathering = grandfathering or GrandfatheringManager(store, clock, config)
        self.reconciler = reconciler or SubscriptionReconciler(store, clock)

    def provision(self, identity) -> UserRecord:
        """
        First-touch lazy initialization: a valid credential without a user row
        gets a `free` row built from the identity claims.
        """
        existing = self.store.get_user(identity.id)
        if existing is not None:
            return existing
        created = self.store.create_user(
            UserRecord(
                id=identity.id,
                email=identity.email,
                subscription_tier=Tier.FREE,
                grandfathered_until=None,
                created_at=identity.created_at,
                updated_at=self.clock.now(),
            )
        )
        logger.info(f"Provisioned user {identity.id} at free tier", extra={"user_id": identity.id})
        return created

    def _prepare(self, user_id: str, identity=None) -> UserRecord:
        user = self.store.get_user(user_id)
        if user is None:
            if identity is None:
                raise NotFound("User", user_id)
            self.provision(identity)

        user = self.grandfathering.auto_grant_if_eligible(user_id)
        if user.subscription_tier == Tier.PREMIUM and self.reconciler.sync_lapsed_cancellation(user_id):
            user = self.store.get_user(user_id)
        return user

    def evaluate(self, user_id: str, identity=None) -> EntitlementDecision:
        """Read path for display endpoints. Never downgrades or reserves."""
        user = self._prepare(user_id, identity)
        return resolve(user, self.ledger.count_today(user_id), self.clock.now(), self.config)

    def check_and_reserve(self, user_id: str, identity=None) -> EntitlementDecision:
        user = self._prepare(user_id, identity)
        decision = resolve(user, self.ledger.count_today(user_id), self.clock.now(), self.config)

        if decision.requires_downgrade:
            # The same request is then judged under the free-tier limit.
            self.grandfathering.downgrade_if_expired(user_id)
            user = self.store.get_user(user_id)
            decision = resolve(user, self.ledger.count_today(user_id), self.clock.now(), self.config)

        if not decision.can_generate:
            logger.info(
                "Generation denied",
                extra={
                    "user_id": user_id,
                    "tier": decision.tier.value,
                    "reason": decision.reason,
                    "used_today": decision.used_today,
                },
            )
            return decision

        if decision.tier != Tier.FREE:
            return decision

        placeholder, used_before = self.ledger.reserve(user_id, self.config.free_daily_limit)
        if placeholder is None:
            # Lost the race to a concurrent request for the last slot.
            return resolve(user, used_before, self.clock.now(), self.config)
        return replace(decision, used_today=used_before + 1, reservation_id=placeholder.id)

    def finalize(
        self,
        decision: EntitlementDecision,
        user_id: str,
        payload: Optional[Dict[str, Any]],
        generation_type: GenerationType = GenerationType.AI,
    ) -> None:
        """
        Best-effort: fill the placeholder (free tier) or append an analytics
        record (unlimited tiers). Failures are logged, never raised.
        """
        try:
            if decision.reservation_id is not None:
                self.ledger.finalize(user_id, payload, generation_type, reservation_id=decision.reservation_id)
            elif decision.can_generate:
                self.ledger.record(user_id, generation_type, payload)
        except Exception as e:
            logger.warning(f"Failed to record workout generation for user {user_id}: {e}")

    def daily_usage(self, user_id: str, identity=None) -> Dict[str, Any]:
        decision = self.evaluate(user_id, identity)
        user = self.store.get_user(user_id)
        now = self.clock.now()
        status = expiration_status(user.grandfathered_until if user else None, now, self.config)
        next_reset: Optional[datetime] = self.ledger.next_reset_time() if decision.tier == Tier.FREE else None
        return {
            "canGenerate": decision.can_generate,
            "tier": decision.tier.value,
            "usedToday": decision.used_today,
            "dailyLimit": decision.daily_limit,
            "nextResetTime": next_reset.isoformat() if next_reset else None,
            "reason": decision.reason,
            "expiresAt": decision.expires_at.isoformat() if decision.expires_at else None,
            "timeUntilExpiration": format_time_until_expiration(status) if decision.tier == Tier.GRANDFATHERED else None,
            "gracePeriod": decision.grace_period,
        }
