from __future__ import annotations

import logging
from typing import Optional

from fastapi import APIRouter, Body, Depends, HTTPException, Request, status

from core.exceptions import ConflictError, ServiceUnavailableError, WebhookRejectedError

from core.auth import Identity, get_current_identity
from routers.deps import get_access_gate, get_billing_provider, get_reconciler, get_store
from schemas import (
    CancelSubscriptionRequest,
    CreateSubscriptionRequest,
    SubscriptionResponse,
    SyncSubscriptionRequest,
)
from services.billing_provider import BillingProvider
from services.entitlements import (
    AccessGate,
    BillingEvent,
    BillingEventType,
    EntitlementStore,
    MalformedEvent,
    SubscriptionReconciler,
    SubscriptionStatus,
    UnknownEvent,
)
from services.entitlements.records import record_to_dict
from services.stripe_service import normalize_stripe_event

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/v1/billing", tags=["billing"])


def _subscription_view(record) -> dict:
    return SubscriptionResponse.model_validate(record_to_dict(record)).model_dump(mode="json")


@router.get("/status")
def billing_status(
    identity: Identity = Depends(get_current_identity),
    gate: AccessGate = Depends(get_access_gate),
    store: EntitlementStore = Depends(get_store),
):
    """Tier plus the caller's subscription rows (newest first)."""
    decision = gate.evaluate(identity.id, identity)
    subs = store.list_subscriptions(user_id=identity.id)
    active = [s for s in subs if s.status == SubscriptionStatus.ACTIVE]
    return {
        "tier": decision.tier.value,
        "hasActiveSubscription": bool(active),
        "subscriptions": [_subscription_view(s) for s in reversed(subs)],
    }


@router.post("/subscriptions")
def create_subscription(
    request: CreateSubscriptionRequest,
    identity: Identity = Depends(get_current_identity),
    gate: AccessGate = Depends(get_access_gate),
    store: EntitlementStore = Depends(get_store),
    reconciler: SubscriptionReconciler = Depends(get_reconciler),
    provider: BillingProvider = Depends(get_billing_provider),
):
    """
    Start a premium subscription.

    The local row stays `pending` until the provider reports activation through
    the webhook. Returns the provider-hosted approval URL.
    """
    user = gate.provision(identity)
    existing = store.list_subscriptions(user_id=user.id, status=SubscriptionStatus.ACTIVE)
    if existing:
        raise ConflictError("Already has an active subscription")

    remote = provider.create_subscription(user_id=user.id, email=user.email, billing_cycle=request.billing_cycle)
    reconciler.apply(
        BillingEvent(
            event_id=f"create:{remote.external_subscription_id}",
            event_type=BillingEventType.CREATED.value,
            external_subscription_id=remote.external_subscription_id,
            resource={
                "user_id": user.id,
                "plan_id": remote.plan_id,
                "billing_cycle": request.billing_cycle,
                "current_period_start": remote.current_period_start,
                "current_period_end": remote.current_period_end,
                "raw": remote.raw,
            },
            user_id=user.id,
        )
    )
    logger.info(
        f"Started {request.billing_cycle} subscription {remote.external_subscription_id} for user {user.id}",
        extra={"user_id": user.id, "subscription_id": remote.external_subscription_id},
    )
    return {
        "subscriptionId": remote.external_subscription_id,
        "status": SubscriptionStatus.PENDING.value,
        "approvalUrl": remote.approval_url,
    }


@router.post("/subscriptions/cancel")
def cancel_subscription(
    request: CancelSubscriptionRequest,
    identity: Identity = Depends(get_current_identity),
    store: EntitlementStore = Depends(get_store),
    provider: BillingProvider = Depends(get_billing_provider),
):
    """
    Ask the provider to cancel at period end. Tier changes only when the
    cancellation webhook (or the lapsed-period sweep) is reconciled.
    """
    active = store.list_subscriptions(user_id=identity.id, status=SubscriptionStatus.ACTIVE)
    if not active:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="No active subscription found")

    sub = active[-1]
    provider.cancel_subscription(sub.external_subscription_id, reason=request.reason)
    logger.info(
        f"Cancellation requested for subscription {sub.external_subscription_id}",
        extra={"user_id": identity.id, "subscription_id": sub.external_subscription_id},
    )
    return {
        "success": True,
        "subscriptionId": sub.external_subscription_id,
        "accessUntil": sub.current_period_end.isoformat() if sub.current_period_end else None,
    }


@router.post("/subscriptions/sync")
def sync_subscription(
    request: Optional[SyncSubscriptionRequest] = Body(default=None),
    identity: Identity = Depends(get_current_identity),
    gate: AccessGate = Depends(get_access_gate),
    store: EntitlementStore = Depends(get_store),
    reconciler: SubscriptionReconciler = Depends(get_reconciler),
    provider: BillingProvider = Depends(get_billing_provider),
):
    """
    Pull the subscription state from the provider and apply it now, for when
    the customer returns from checkout before the webhook has arrived.
    """
    request = request or SyncSubscriptionRequest()
    if request.subscription_id:
        sub = store.get_subscription_by_external_id(request.subscription_id)
        if sub is not None and sub.user_id != identity.id:
            sub = None
    else:
        subs = store.list_subscriptions(user_id=identity.id)
        sub = subs[-1] if subs else None
    if sub is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Subscription not found")

    result = reconciler.sync_subscription(provider, sub)
    decision = gate.evaluate(identity.id, identity)
    return {
        "success": True,
        "tier": decision.tier.value,
        "subscription": _subscription_view(store.get_subscription_by_external_id(sub.external_subscription_id)),
        "result": result,
    }


@router.post("/webhooks/stripe")
async def stripe_webhook(
    request: Request,
    provider=Depends(get_billing_provider),
    reconciler: SubscriptionReconciler = Depends(get_reconciler),
):
    """
    Stripe webhook endpoint.

    Verifies signature and processes events idempotently. Event types we do
    not map are acknowledged so Stripe stops retrying them.
    """
    sig = request.headers.get("stripe-signature")
    if not sig:
        raise WebhookRejectedError("Missing Stripe-Signature header")

    payload = await request.body()
    try:
        event = provider.construct_event(payload=payload, sig_header=sig)
    except RuntimeError as e:
        raise ServiceUnavailableError(str(e))
    except Exception:
        # Signature verification errors should return 400 so Stripe can retry appropriately.
        raise WebhookRejectedError("Invalid webhook signature")

    try:
        billing_event = normalize_stripe_event(event)
    except UnknownEvent as e:
        logger.info(f"Acknowledging unhandled Stripe event: {e}")
        return {"ok": True, "result": {"processed": True, "handled": False}}
    except MalformedEvent as e:
        raise WebhookRejectedError(str(e))

    result = reconciler.apply(billing_event)
    return {"ok": True, "result": result}
