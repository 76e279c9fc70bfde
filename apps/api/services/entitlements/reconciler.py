"""
Subscription reconciler.

Applies normalized billing lifecycle events to Subscription rows and the
owning user's tier. Delivery is at-least-once and unordered, so:
- event ids are claimed before applying; a replay is acknowledged, not re-applied
- an event older than the subscription's last applied event is acknowledged as stale
- unknown event types are logged and acknowledged, never retried

State machine (Subscription.status):

    pending   --activated-->      active
    active    --cancelled-->      cancelled   (premium kept until current_period_end)
    active    --suspended-->      suspended   (free immediately)
    active    --payment_failed--> active      (failure timestamp only)
    active    --expired-->        expired     (free immediately)
    suspended --activated-->      active      (premium restored)
    suspended --payment_completed--> active   (premium restored)
"""

from __future__ import annotations

import json
import logging
import uuid
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Callable, Dict, List, Optional

from services.billing_provider import BillingProvider
from services.entitlements.clock import Clock, ensure_aware
from services.entitlements.errors import MalformedEvent, UnknownEvent
from services.entitlements.records import (
    BillingEvent,
    BillingEventType,
    SubscriptionRecord,
    SubscriptionStatus,
    Tier,
)
from services.entitlements.store import EntitlementStore

logger = logging.getLogger(__name__)

# Transitions the provider is expected to drive; anything else is applied with a warning.
_EXPECTED_FROM = {
    BillingEventType.ACTIVATED: {SubscriptionStatus.PENDING, SubscriptionStatus.SUSPENDED, SubscriptionStatus.ACTIVE},
    BillingEventType.CANCELLED: {SubscriptionStatus.ACTIVE, SubscriptionStatus.CANCELLED},
    BillingEventType.SUSPENDED: {SubscriptionStatus.ACTIVE, SubscriptionStatus.SUSPENDED},
    BillingEventType.PAYMENT_FAILED: {SubscriptionStatus.ACTIVE},
    BillingEventType.EXPIRED: {SubscriptionStatus.ACTIVE, SubscriptionStatus.CANCELLED, SubscriptionStatus.SUSPENDED, SubscriptionStatus.EXPIRED},
}


def _as_datetime(value: Any) -> Optional[datetime]:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return ensure_aware(value)
    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(int(value), tz=timezone.utc)
    try:
        return ensure_aware(datetime.fromisoformat(str(value).replace("Z", "+00:00")))
    except ValueError as e:
        raise MalformedEvent(f"Unparseable timestamp: {value!r}") from e


def _as_decimal(value: Any) -> Optional[Decimal]:
    if value is None or value == "":
        return None
    try:
        return Decimal(str(value))
    except InvalidOperation as e:
        raise MalformedEvent(f"Unparseable amount: {value!r}") from e


def _audit_payload(resource: Dict[str, Any]) -> Dict[str, Any]:
    raw = resource.get("raw") or resource
    return json.loads(json.dumps(raw, default=str))


def parse_event_type(value: str) -> BillingEventType:
    try:
        return BillingEventType(value)
    except ValueError:
        raise UnknownEvent(f"Unhandled billing event type: {value}")


class SubscriptionReconciler:
    def __init__(self, store: EntitlementStore, clock: Clock) -> None:
        self.store = store
        self.clock = clock
        self._handlers: Dict[BillingEventType, Callable[[SubscriptionRecord, BillingEvent, datetime], Dict[str, Any]]] = {
            BillingEventType.CREATED: self._on_created,
            BillingEventType.ACTIVATED: self._on_activated,
            BillingEventType.CANCELLED: self._on_cancelled,
            BillingEventType.SUSPENDED: self._on_suspended,
            BillingEventType.PAYMENT_COMPLETED: self._on_payment_completed,
            BillingEventType.PAYMENT_FAILED: self._on_payment_failed,
            BillingEventType.EXPIRED: self._on_expired,
        }

    def apply(self, event: BillingEvent) -> Dict[str, Any]:
        try:
            event_type = parse_event_type(event.event_type)
        except UnknownEvent:
            logger.info(
                f"Ignoring unhandled billing event type {event.event_type}",
                extra={"event_id": event.event_id, "event_type": event.event_type},
            )
            return {"processed": True, "handled": False, "event_id": event.event_id, "event_type": event.event_type}

        if not event.event_id:
            raise MalformedEvent("Billing event is missing an event id")
        if not event.external_subscription_id:
            raise MalformedEvent(f"Billing event {event.event_id} is missing a subscription id")

        if not self.store.claim_event(event.event_id, event_type.value, event.external_subscription_id):
            logger.info(f"Billing event {event.event_id} already processed", extra={"event_id": event.event_id})
            return {"processed": False, "idempotent": True, "event_id": event.event_id}

        try:
            return self._apply_claimed(event, event_type)
        except Exception:
            # Let the provider redeliver.
            self.store.release_event(event.event_id)
            raise

    def _apply_claimed(self, event: BillingEvent, event_type: BillingEventType) -> Dict[str, Any]:
        now = self.clock.now()
        base = {"event_id": event.event_id, "event_type": event_type.value}

        sub = self.store.get_subscription_by_external_id(event.external_subscription_id)
        if sub is None:
            user_id = event.user_id or event.resource.get("user_id")
            if not user_id or self.store.get_user(str(user_id)) is None:
                logger.warning(
                    f"Billing event {event.event_id} matched no subscription or user",
                    extra={**base, "external_subscription_id": event.external_subscription_id},
                )
                return {"processed": True, "handled": False, "matched_user": False, **base}
            sub = self._create_pending(str(user_id), event)
            if event_type == BillingEventType.CREATED:
                return {"processed": True, "handled": True, "status": sub.status.value, "user_id": sub.user_id, **base}

        occurred_at = _as_datetime(event.occurred_at) or now
        if sub.last_event_at is not None and occurred_at < sub.last_event_at:
            logger.info(
                f"Stale billing event {event.event_id} for subscription {sub.external_subscription_id}",
                extra={**base, "occurred_at": occurred_at.isoformat(), "last_event_at": sub.last_event_at.isoformat()},
            )
            return {"processed": True, "handled": False, "stale": True, **base}

        expected = _EXPECTED_FROM.get(event_type)
        if expected is not None and sub.status not in expected:
            logger.warning(
                f"Unexpected transition {sub.status.value} --{event_type.value}--> for subscription {sub.external_subscription_id}",
                extra={**base, "from_status": sub.status.value},
            )

        outcome = self._handlers[event_type](sub, event, now)
        self.store.update_subscription(
            sub.id,
            last_event_at=occurred_at,
            provider_payload=_audit_payload(event.resource),
        )
        user = self.store.get_user(sub.user_id)
        logger.info(
            f"Applied billing event {event_type.value} to subscription {sub.external_subscription_id}",
            extra={**base, "user_id": sub.user_id, "tier": user.subscription_tier.value if user else None},
        )
        return {
            "processed": True,
            "handled": True,
            "user_id": sub.user_id,
            "tier": user.subscription_tier.value if user else None,
            **outcome,
            **base,
        }

    # --- helpers ---

    def _period_fields(self, resource: Dict[str, Any]) -> Dict[str, Any]:
        fields: Dict[str, Any] = {}
        for key in ("current_period_start", "current_period_end", "trial_end"):
            if resource.get(key) is not None:
                fields[key] = _as_datetime(resource[key])
        if "cancel_at_period_end" in resource:
            fields["cancel_at_period_end"] = bool(resource.get("cancel_at_period_end"))
        if resource.get("plan_id"):
            fields["external_plan_id"] = str(resource["plan_id"])
        if resource.get("amount") is not None:
            fields["amount_per_cycle"] = _as_decimal(resource.get("amount"))
        if resource.get("currency"):
            fields["currency"] = str(resource["currency"]).upper()
        if resource.get("billing_cycle"):
            fields["billing_cycle"] = str(resource["billing_cycle"])
        return fields

    def _create_pending(self, user_id: str, event: BillingEvent) -> SubscriptionRecord:
        record = SubscriptionRecord(
            id=str(uuid.uuid4()),
            user_id=user_id,
            external_subscription_id=event.external_subscription_id,
            status=SubscriptionStatus.PENDING,
            provider_payload=_audit_payload(event.resource),
            **self._period_fields(event.resource),
        )
        return self.store.create_subscription(record)

    def _other_active(self, sub: SubscriptionRecord) -> List[SubscriptionRecord]:
        return [
            s for s in self.store.list_subscriptions(user_id=sub.user_id, status=SubscriptionStatus.ACTIVE)
            if s.id != sub.id
        ]

    def _downgrade_user(self, sub: SubscriptionRecord, now: datetime) -> bool:
        if self._other_active(sub):
            logger.info(
                f"User {sub.user_id} keeps premium through another active subscription",
                extra={"user_id": sub.user_id, "subscription_id": sub.external_subscription_id},
            )
            return False
        user = self.store.get_user(sub.user_id)
        if user is None or user.subscription_tier != Tier.PREMIUM:
            return False
        self.store.update_user(sub.user_id, subscription_tier=Tier.FREE, updated_at=now)
        return True

    def _set_premium(self, user_id: str, now: datetime) -> None:
        # Premium supersedes grandfathering.
        self.store.update_user(
            user_id, subscription_tier=Tier.PREMIUM, grandfathered_until=None, updated_at=now
        )

    # --- handlers ---

    def _on_created(self, sub, event, now) -> Dict[str, Any]:
        fields = self._period_fields(event.resource)
        if fields:
            self.store.update_subscription(sub.id, **fields)
        return {"status": sub.status.value}

    def _on_activated(self, sub, event, now) -> Dict[str, Any]:
        for other in self._other_active(sub):
            logger.warning(
                f"Cancelling superseded active subscription {other.external_subscription_id} for user {sub.user_id}"
            )
            self.store.update_subscription(other.id, status=SubscriptionStatus.CANCELLED, cancelled_at=now)
        self.store.update_subscription(
            sub.id,
            status=SubscriptionStatus.ACTIVE,
            cancelled_at=None,
            **{"cancel_at_period_end": False, **self._period_fields(event.resource)},
        )
        self._set_premium(sub.user_id, now)
        return {"status": SubscriptionStatus.ACTIVE.value}

    def _on_cancelled(self, sub, event, now) -> Dict[str, Any]:
        fields = self._period_fields(event.resource)
        cancelled_at = _as_datetime(event.resource.get("cancelled_at")) or now
        updated = self.store.update_subscription(
            sub.id, status=SubscriptionStatus.CANCELLED, cancelled_at=cancelled_at, **fields
        )
        period_end = updated.current_period_end or now
        downgraded = False
        if period_end <= now:
            downgraded = self._downgrade_user(updated, now)
        return {
            "status": SubscriptionStatus.CANCELLED.value,
            "downgraded": downgraded,
            "access_until": updated.current_period_end.isoformat() if updated.current_period_end else None,
        }

    def _on_suspended(self, sub, event, now) -> Dict[str, Any]:
        self.store.update_subscription(sub.id, status=SubscriptionStatus.SUSPENDED)
        downgraded = self._downgrade_user(sub, now)
        return {"status": SubscriptionStatus.SUSPENDED.value, "downgraded": downgraded}

    def _on_payment_completed(self, sub, event, now) -> Dict[str, Any]:
        paid_at = _as_datetime(event.resource.get("paid_at")) or now
        amount = _as_decimal(event.resource.get("payment_amount", event.resource.get("amount")))
        updated = self.store.update_subscription(
            sub.id, last_payment_at=paid_at, last_payment_amount=amount, payment_failed_at=None
        )

        lapsed = updated.status == SubscriptionStatus.EXPIRED or (
            updated.status == SubscriptionStatus.CANCELLED
            and (updated.current_period_end is None or updated.current_period_end <= now)
        )
        restored = False
        if not lapsed and updated.status == SubscriptionStatus.SUSPENDED:
            updated = self.store.update_subscription(sub.id, status=SubscriptionStatus.ACTIVE)
        user = self.store.get_user(sub.user_id)
        if not lapsed and user is not None and user.subscription_tier != Tier.PREMIUM:
            self._set_premium(sub.user_id, now)
            restored = True
        return {"status": updated.status.value, "restored": restored}

    def _on_payment_failed(self, sub, event, now) -> Dict[str, Any]:
        failed_at = _as_datetime(event.resource.get("failed_at")) or now
        self.store.update_subscription(sub.id, payment_failed_at=failed_at)
        return {"status": sub.status.value}

    def _on_expired(self, sub, event, now) -> Dict[str, Any]:
        self.store.update_subscription(sub.id, status=SubscriptionStatus.EXPIRED, expired_at=now)
        downgraded = self._downgrade_user(sub, now)
        return {"status": SubscriptionStatus.EXPIRED.value, "downgraded": downgraded}

    # --- sweeps ---

    def sync_lapsed_cancellation(self, user_id: str) -> bool:
        """Downgrade once a cancelled subscription's paid period has elapsed."""
        now = self.clock.now()
        user = self.store.get_user(user_id)
        if user is None or user.subscription_tier != Tier.PREMIUM:
            return False
        subs = self.store.list_subscriptions(user_id=user_id)
        paid_through = [
            s for s in subs
            if s.status == SubscriptionStatus.ACTIVE
            or (s.status == SubscriptionStatus.CANCELLED and s.current_period_end and s.current_period_end > now)
        ]
        lapsed = [
            s for s in subs
            if s.status == SubscriptionStatus.CANCELLED
            and (s.current_period_end is None or s.current_period_end <= now)
        ]
        if paid_through or not lapsed:
            return False
        self.store.update_user(user_id, subscription_tier=Tier.FREE, updated_at=now)
        logger.info(
            f"Downgraded user {user_id} to free after cancelled period ended",
            extra={"user_id": user_id, "subscription_id": lapsed[-1].external_subscription_id},
        )
        return True

    def expire_lapsed_subscriptions(self) -> Dict[str, Any]:
        now = self.clock.now()
        lapsed = self.store.list_subscriptions(status=SubscriptionStatus.CANCELLED, period_end_before=now)
        user_ids = sorted({s.user_id for s in lapsed})
        downgraded = 0
        errors: List[Dict[str, str]] = []
        for user_id in user_ids:
            try:
                if self.sync_lapsed_cancellation(user_id):
                    downgraded += 1
            except Exception as e:
                logger.warning(f"Failed to sync lapsed cancellation for user {user_id}: {e}")
                errors.append({"userId": user_id, "error": str(e) or e.__class__.__name__})
        return {"processed": len(user_ids), "downgraded": downgraded, "errors": errors}

    def reconcile_with_provider(self, provider: BillingProvider) -> Dict[str, Any]:
        """
        Failsafe pull for missed webhooks: active subscriptions whose paid
        period has ended are re-read from the provider and applied as events.
        """
        now = self.clock.now()
        stale = self.store.list_subscriptions(status=SubscriptionStatus.ACTIVE, period_end_before=now)
        applied = 0
        errors: List[Dict[str, str]] = []
        for sub in stale:
            try:
                result = self._apply_provider_state(sub, provider.get_subscription_status(sub.external_subscription_id), now)
                if result.get("handled"):
                    applied += 1
            except Exception as e:
                logger.warning(f"Provider reconciliation failed for subscription {sub.external_subscription_id}: {e}")
                errors.append({"subscriptionId": sub.external_subscription_id, "error": str(e) or e.__class__.__name__})
        return {"processed": len(stale), "applied": applied, "errors": errors}

    def sync_subscription(self, provider: BillingProvider, sub: SubscriptionRecord) -> Dict[str, Any]:
        """
        On-demand pull for one subscription, e.g. right after the customer
        returns from checkout. Raises UpstreamUnavailable.
        """
        remote = provider.get_subscription_status(sub.external_subscription_id)
        result = self._apply_provider_state(sub, remote, self.clock.now())
        logger.info(
            "Synced subscription from provider",
            extra={
                "user_id": sub.user_id,
                "subscription_id": sub.external_subscription_id,
                "provider_status": remote.status,
            },
        )
        return result

    def _apply_provider_state(self, sub: SubscriptionRecord, remote, now: datetime) -> Dict[str, Any]:
        period_end = remote.current_period_end.isoformat() if remote.current_period_end else "none"
        return self.apply(
            BillingEvent(
                event_id=f"reconcile:{sub.external_subscription_id}:{remote.event_type}:{period_end}",
                event_type=remote.event_type,
                external_subscription_id=sub.external_subscription_id,
                resource={
                    "current_period_start": remote.current_period_start,
                    "current_period_end": remote.current_period_end,
                    "cancel_at_period_end": remote.cancel_at_period_end,
                    "raw": remote.raw or {"status": remote.status},
                },
                occurred_at=now,
                user_id=sub.user_id,
            )
        )
