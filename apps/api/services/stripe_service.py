from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
import logging
import os
from typing import Any, Optional

import stripe

from core.config import settings
from services.billing_provider import BillingProvider, ProviderSubscription
from services.entitlements.errors import MalformedEvent, UnknownEvent, UpstreamUnavailable
from services.entitlements.records import BillingEvent, BillingEventType

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class StripeConfig:
    secret_key: str
    webhook_secret: Optional[str]
    premium_monthly_price_id: str
    premium_yearly_price_id: Optional[str]
    checkout_success_url: str
    checkout_cancel_url: str


def _get_stripe_config() -> StripeConfig:
    """
    Load Stripe config from environment via Settings.

    Fail closed: if configuration is missing, billing endpoints should not proceed.
    """
    secret_key = settings.STRIPE_SECRET_KEY or os.getenv("STRIPE_SECRET_TEST_KEY")
    webhook_secret = settings.STRIPE_WEBHOOK_SECRET or os.getenv("STRIPE_WEBHOOK_TEST_SECRET")
    price_id = settings.STRIPE_PRICE_PREMIUM_MONTHLY_ID
    yearly_price_id = settings.STRIPE_PRICE_PREMIUM_YEARLY_ID

    base = (settings.WEB_APP_BASE_URL or "http://localhost:3000").rstrip("/")
    success_url = settings.STRIPE_CHECKOUT_SUCCESS_URL or f"{base}/profile?subscription=success"
    cancel_url = settings.STRIPE_CHECKOUT_CANCEL_URL or f"{base}/profile?subscription=cancel"

    missing = [name for name, val in [("STRIPE_SECRET_KEY", secret_key), ("STRIPE_PRICE_PREMIUM_MONTHLY_ID", price_id)] if not val]
    if missing:
        raise RuntimeError(f"Stripe not configured (missing: {', '.join(missing)})")

    return StripeConfig(
        secret_key=str(secret_key),
        webhook_secret=str(webhook_secret) if webhook_secret else None,
        premium_monthly_price_id=str(price_id),
        premium_yearly_price_id=str(yearly_price_id) if yearly_price_id else None,
        checkout_success_url=str(success_url),
        checkout_cancel_url=str(cancel_url),
    )


def _get(obj: Any, key: str, default: Any = None) -> Any:
    """Attribute access for stripe.StripeObject, key access for plain dicts."""
    if obj is None:
        return default
    if isinstance(obj, dict):
        return obj.get(key, default)
    try:
        value = getattr(obj, key)
    except AttributeError:
        return default
    return default if value is None else value


def _to_plain(obj: Any) -> dict:
    if obj is None:
        return {}
    if hasattr(obj, "to_dict_recursive"):
        return obj.to_dict_recursive()
    if hasattr(obj, "to_dict"):
        return obj.to_dict()
    return dict(obj) if isinstance(obj, dict) else {}


def _ts(value: Any) -> Optional[datetime]:
    if value is None:
        return None
    try:
        return datetime.fromtimestamp(int(value), tz=timezone.utc)
    except (TypeError, ValueError):
        return None


def _first_item(sub: Any) -> Any:
    data = _get(_get(sub, "items"), "data") or []
    return data[0] if data else None


def _current_period(sub: Any) -> tuple[Optional[datetime], Optional[datetime]]:
    """
    Stripe API compatibility:
    - Older API versions: `subscription.current_period_*` (top-level)
    - Newer API versions: billing period fields live on `subscription.items.data[*]`
    """
    start = _get(sub, "current_period_start")
    end = _get(sub, "current_period_end")
    if end is None:
        item = _first_item(sub)
        start = _get(item, "current_period_start", start)
        end = _get(item, "current_period_end")
    if end is None:
        end = _get(sub, "cancel_at")
    return _ts(start), _ts(end)


def _cancel_at_period_end(sub: Any, period_end: Optional[datetime]) -> bool:
    if bool(_get(sub, "cancel_at_period_end", False)):
        return True
    # Newer Stripe API uses `cancel_at` timestamps for scheduled cancellation.
    cancel_at = _ts(_get(sub, "cancel_at"))
    if cancel_at is None:
        return False
    return period_end is None or cancel_at == period_end


def lifecycle_event_for_status(status: Optional[str], cancel_at_period_end: bool = False) -> str:
    """Map a Stripe subscription status onto the reconciler's lifecycle vocabulary."""
    s = (status or "").lower()
    if s in ("active", "trialing"):
        return BillingEventType.CANCELLED.value if cancel_at_period_end else BillingEventType.ACTIVATED.value
    if s == "past_due":
        return BillingEventType.PAYMENT_FAILED.value
    if s in ("unpaid", "paused"):
        return BillingEventType.SUSPENDED.value
    if s == "canceled":
        return BillingEventType.CANCELLED.value
    if s == "incomplete_expired":
        return BillingEventType.EXPIRED.value
    if s == "incomplete":
        return BillingEventType.CREATED.value
    raise UnknownEvent(f"Unhandled Stripe subscription status: {status}")


def _subscription_resource(sub: Any) -> dict[str, Any]:
    period_start, period_end = _current_period(sub)
    item = _first_item(sub)
    price = _get(item, "price")
    recurring = _get(price, "recurring")
    interval = _get(recurring, "interval")
    unit_amount = _get(price, "unit_amount")
    return {
        "user_id": _get(_get(sub, "metadata"), "user_id"),
        "plan_id": _get(price, "id"),
        "amount": unit_amount / 100 if unit_amount is not None else None,
        "currency": _get(price, "currency"),
        "billing_cycle": {"month": "monthly", "year": "yearly"}.get(interval),
        "current_period_start": period_start,
        "current_period_end": period_end,
        "trial_end": _ts(_get(sub, "trial_end")),
        "cancel_at_period_end": _cancel_at_period_end(sub, period_end),
        "cancelled_at": _ts(_get(sub, "canceled_at")),
        "raw": _to_plain(sub),
    }


def _invoice_subscription_id(invoice: Any) -> Optional[str]:
    sub_id = _get(invoice, "subscription")
    if sub_id is None:
        # Newer API versions nest it under parent.subscription_details.
        sub_id = _get(_get(_get(invoice, "parent"), "subscription_details"), "subscription")
    if sub_id is not None and not isinstance(sub_id, str):
        sub_id = _get(sub_id, "id")
    return str(sub_id) if sub_id else None


def normalize_stripe_event(event: Any) -> BillingEvent:
    """
    Translate a verified Stripe webhook event into a BillingEvent.

    Raises UnknownEvent for types the engine does not act on, MalformedEvent
    when the payload lacks a subscription reference.
    """
    event_id = str(_get(event, "id") or "")
    event_type = str(_get(event, "type") or "")
    obj = _get(_get(event, "data"), "object")
    occurred_at = _ts(_get(event, "created"))

    if event_type.startswith("customer.subscription."):
        sub_id = _get(obj, "id")
        resource = _subscription_resource(obj)
        if event_type == "customer.subscription.created":
            lifecycle = BillingEventType.CREATED.value
        elif event_type == "customer.subscription.deleted":
            lifecycle = BillingEventType.EXPIRED.value
        elif event_type == "customer.subscription.paused":
            lifecycle = BillingEventType.SUSPENDED.value
        elif event_type == "customer.subscription.resumed":
            lifecycle = BillingEventType.ACTIVATED.value
        elif event_type == "customer.subscription.updated":
            lifecycle = lifecycle_event_for_status(_get(obj, "status"), resource["cancel_at_period_end"])
        else:
            raise UnknownEvent(f"Unhandled Stripe event type: {event_type}")

    elif event_type in ("invoice.paid", "invoice.payment_succeeded", "invoice.payment_failed"):
        sub_id = _invoice_subscription_id(obj)
        amount_paid = _get(obj, "amount_paid")
        if event_type == "invoice.payment_failed":
            lifecycle = BillingEventType.PAYMENT_FAILED.value
            resource = {"failed_at": occurred_at, "raw": _to_plain(obj)}
        else:
            lifecycle = BillingEventType.PAYMENT_COMPLETED.value
            resource = {
                "paid_at": _ts(_get(_get(obj, "status_transitions"), "paid_at")) or occurred_at,
                "payment_amount": amount_paid / 100 if amount_paid is not None else None,
                "currency": _get(obj, "currency"),
                "raw": _to_plain(obj),
            }

    elif event_type == "checkout.session.completed":
        if _get(obj, "mode") != "subscription":
            raise UnknownEvent(f"Unhandled checkout mode: {_get(obj, 'mode')}")
        sub_id = _get(obj, "subscription")
        resource = {
            "user_id": _get(obj, "client_reference_id") or _get(_get(obj, "metadata"), "user_id"),
            "raw": _to_plain(obj),
        }
        lifecycle = BillingEventType.ACTIVATED.value

    else:
        raise UnknownEvent(f"Unhandled Stripe event type: {event_type}")

    if not sub_id:
        raise MalformedEvent(f"Stripe event {event_id} ({event_type}) has no subscription reference")

    return BillingEvent(
        event_id=event_id,
        event_type=lifecycle,
        external_subscription_id=str(sub_id),
        resource=resource,
        occurred_at=occurred_at,
        user_id=resource.get("user_id"),
    )


class StripeBillingProvider(BillingProvider):
    def __init__(self) -> None:
        cfg = _get_stripe_config()
        stripe.api_key = cfg.secret_key
        self.cfg = cfg

    def _price_for(self, billing_cycle: str) -> str:
        if billing_cycle == "yearly" and self.cfg.premium_yearly_price_id:
            return self.cfg.premium_yearly_price_id
        return self.cfg.premium_monthly_price_id

    def _customer_for(self, *, user_id: str, email: Optional[str]) -> str:
        if email:
            existing = stripe.Customer.list(email=email, limit=1)
            data = list(_get(existing, "data") or [])
            if data:
                return str(_get(data[0], "id"))
        customer = stripe.Customer.create(email=email, metadata={"user_id": user_id})
        return str(_get(customer, "id"))

    def create_subscription(self, *, user_id: str, email: Optional[str], billing_cycle: str) -> ProviderSubscription:
        """
        Create an incomplete subscription; Stripe activates it once the first
        invoice is paid through the hosted invoice page.
        """
        try:
            customer_id = self._customer_for(user_id=user_id, email=email)
            sub = stripe.Subscription.create(
                customer=customer_id,
                items=[{"price": self._price_for(billing_cycle)}],
                payment_behavior="default_incomplete",
                metadata={"user_id": user_id, "billing_cycle": billing_cycle},
                expand=["latest_invoice"],
            )
        except stripe.StripeError as e:
            logger.error(f"Stripe subscription create failed for user {user_id}: {e}")
            raise UpstreamUnavailable("Billing provider unavailable", user_id=user_id) from e

        resource = _subscription_resource(sub)
        return ProviderSubscription(
            external_subscription_id=str(_get(sub, "id")),
            event_type=BillingEventType.CREATED.value,
            status=str(_get(sub, "status") or "incomplete"),
            current_period_start=resource["current_period_start"],
            current_period_end=resource["current_period_end"],
            plan_id=resource["plan_id"],
            approval_url=_get(_get(sub, "latest_invoice"), "hosted_invoice_url"),
            raw=resource["raw"],
        )

    def cancel_subscription(self, external_subscription_id: str, *, reason: Optional[str] = None) -> None:
        try:
            stripe.Subscription.modify(
                external_subscription_id,
                cancel_at_period_end=True,
                metadata={"cancel_reason": reason or "User requested cancellation"},
            )
        except stripe.StripeError as e:
            logger.error(f"Stripe cancel failed for subscription {external_subscription_id}: {e}")
            raise UpstreamUnavailable("Billing provider unavailable") from e

    def get_subscription_status(self, external_subscription_id: str) -> ProviderSubscription:
        try:
            sub = stripe.Subscription.retrieve(external_subscription_id, expand=["items"])
        except stripe.StripeError as e:
            logger.error(f"Stripe retrieve failed for subscription {external_subscription_id}: {e}")
            raise UpstreamUnavailable("Billing provider unavailable") from e

        resource = _subscription_resource(sub)
        status = str(_get(sub, "status") or "")
        return ProviderSubscription(
            external_subscription_id=external_subscription_id,
            event_type=lifecycle_event_for_status(status, resource["cancel_at_period_end"]),
            status=status,
            current_period_start=resource["current_period_start"],
            current_period_end=resource["current_period_end"],
            cancel_at_period_end=resource["cancel_at_period_end"],
            plan_id=resource["plan_id"],
            raw=resource["raw"],
        )

    def construct_event(self, *, payload: bytes, sig_header: str):
        if not self.cfg.webhook_secret:
            raise RuntimeError("Stripe webhook secret not configured")
        return stripe.Webhook.construct_event(
            payload=payload,
            sig_header=sig_header,
            secret=self.cfg.webhook_secret,
        )
