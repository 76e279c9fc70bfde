"""Stripe webhook normalization and the Stripe billing provider (no network)."""
from datetime import datetime, timezone

import pytest

from services import stripe_service as ss
from services.entitlements import BillingEventType, MalformedEvent, UnknownEvent, UpstreamUnavailable

PERIOD_START = 1753660800  # 2025-07-28T00:00:00Z
PERIOD_END = 1756339200  # 2025-08-28T00:00:00Z


class _DummyStripeConfig:
    def __init__(self):
        self.secret_key = "sk_test_dummy"
        self.webhook_secret = "whsec_dummy"
        self.premium_monthly_price_id = "price_monthly"
        self.premium_yearly_price_id = "price_yearly"
        self.checkout_success_url = "http://localhost:3000/profile?subscription=success"
        self.checkout_cancel_url = "http://localhost:3000/profile?subscription=cancel"


def _subscription(status="active", **overrides):
    # Newer Stripe API versions put billing period fields on subscription items.
    sub = {
        "id": "sub_123",
        "status": status,
        "cancel_at_period_end": False,
        "cancel_at": None,
        "metadata": {"user_id": "u1"},
        "items": {
            "data": [
                {
                    "current_period_start": PERIOD_START,
                    "current_period_end": PERIOD_END,
                    "price": {"id": "price_monthly", "unit_amount": 999, "currency": "usd", "recurring": {"interval": "month"}},
                }
            ]
        },
    }
    sub.update(overrides)
    return sub


def _event(event_type, obj, event_id="evt_1"):
    return {"id": event_id, "type": event_type, "created": PERIOD_START + 60, "data": {"object": obj}}


@pytest.mark.parametrize(
    "status, cancel_at_period_end, expected",
    [
        ("active", False, "activated"),
        ("trialing", False, "activated"),
        ("active", True, "cancelled"),
        ("past_due", False, "payment_failed"),
        ("unpaid", False, "suspended"),
        ("paused", False, "suspended"),
        ("canceled", False, "cancelled"),
        ("incomplete_expired", False, "expired"),
        ("incomplete", False, "created"),
    ],
)
def test_lifecycle_event_for_status(status, cancel_at_period_end, expected):
    assert ss.lifecycle_event_for_status(status, cancel_at_period_end) == expected


def test_lifecycle_event_for_unknown_status():
    with pytest.raises(UnknownEvent):
        ss.lifecycle_event_for_status("mystery")


def test_subscription_updated_reads_item_period_fields():
    event = ss.normalize_stripe_event(_event("customer.subscription.updated", _subscription()))

    assert event.event_id == "evt_1"
    assert event.event_type == BillingEventType.ACTIVATED.value
    assert event.external_subscription_id == "sub_123"
    assert event.user_id == "u1"
    assert event.occurred_at == datetime.fromtimestamp(PERIOD_START + 60, tz=timezone.utc)
    assert event.resource["current_period_end"] == datetime.fromtimestamp(PERIOD_END, tz=timezone.utc)
    assert event.resource["plan_id"] == "price_monthly"
    assert event.resource["amount"] == 9.99
    assert event.resource["billing_cycle"] == "monthly"


def test_scheduled_cancellation_via_cancel_at():
    sub = _subscription(cancel_at=PERIOD_END)
    event = ss.normalize_stripe_event(_event("customer.subscription.updated", sub))
    assert event.event_type == BillingEventType.CANCELLED.value
    assert event.resource["cancel_at_period_end"] is True


@pytest.mark.parametrize(
    "stripe_type, expected",
    [
        ("customer.subscription.created", "created"),
        ("customer.subscription.deleted", "expired"),
        ("customer.subscription.paused", "suspended"),
        ("customer.subscription.resumed", "activated"),
    ],
)
def test_subscription_event_types(stripe_type, expected):
    assert ss.normalize_stripe_event(_event(stripe_type, _subscription())).event_type == expected


def test_invoice_paid_uses_nested_subscription_reference():
    invoice = {
        "id": "in_1",
        "amount_paid": 999,
        "currency": "usd",
        "status_transitions": {"paid_at": PERIOD_START + 30},
        "parent": {"subscription_details": {"subscription": "sub_123"}},
    }
    event = ss.normalize_stripe_event(_event("invoice.paid", invoice))

    assert event.event_type == BillingEventType.PAYMENT_COMPLETED.value
    assert event.external_subscription_id == "sub_123"
    assert event.resource["payment_amount"] == 9.99
    assert event.resource["paid_at"] == datetime.fromtimestamp(PERIOD_START + 30, tz=timezone.utc)


def test_invoice_payment_failed():
    event = ss.normalize_stripe_event(_event("invoice.payment_failed", {"id": "in_2", "subscription": "sub_123"}))
    assert event.event_type == BillingEventType.PAYMENT_FAILED.value
    assert event.external_subscription_id == "sub_123"


def test_checkout_completed_carries_user_reference():
    session = {"id": "cs_1", "mode": "subscription", "subscription": "sub_123", "client_reference_id": "u1"}
    event = ss.normalize_stripe_event(_event("checkout.session.completed", session))
    assert event.event_type == BillingEventType.ACTIVATED.value
    assert event.user_id == "u1"


def test_unhandled_event_types():
    with pytest.raises(UnknownEvent):
        ss.normalize_stripe_event(_event("charge.refunded", {"id": "ch_1"}))
    with pytest.raises(UnknownEvent):
        ss.normalize_stripe_event(_event("checkout.session.completed", {"id": "cs_1", "mode": "payment"}))


def test_invoice_without_subscription_is_malformed():
    with pytest.raises(MalformedEvent):
        ss.normalize_stripe_event(_event("invoice.paid", {"id": "in_3", "amount_paid": 999}))


def test_provider_requires_configuration(monkeypatch):
    monkeypatch.setattr(ss.settings, "STRIPE_SECRET_KEY", None)
    monkeypatch.setattr(ss.settings, "STRIPE_PRICE_PREMIUM_MONTHLY_ID", None)
    monkeypatch.delenv("STRIPE_SECRET_TEST_KEY", raising=False)
    with pytest.raises(RuntimeError):
        ss.StripeBillingProvider()


def test_provider_create_subscription(monkeypatch):
    monkeypatch.setattr(ss, "_get_stripe_config", lambda: _DummyStripeConfig())
    calls = {}

    monkeypatch.setattr(ss.stripe.Customer, "list", lambda **kwargs: {"data": [{"id": "cus_1"}]})

    def _create(**kwargs):
        calls.update(kwargs)
        sub = _subscription(status="incomplete")
        sub["latest_invoice"] = {"hosted_invoice_url": "https://invoice.stripe.test/i/1"}
        return sub

    monkeypatch.setattr(ss.stripe.Subscription, "create", _create)

    remote = ss.StripeBillingProvider().create_subscription(user_id="u1", email="u1@example.com", billing_cycle="yearly")

    assert calls["customer"] == "cus_1"
    assert calls["items"] == [{"price": "price_yearly"}]
    assert calls["metadata"]["user_id"] == "u1"
    assert remote.external_subscription_id == "sub_123"
    assert remote.event_type == "created"
    assert remote.approval_url == "https://invoice.stripe.test/i/1"


def test_provider_wraps_stripe_errors(monkeypatch):
    monkeypatch.setattr(ss, "_get_stripe_config", lambda: _DummyStripeConfig())

    def _fail(*args, **kwargs):
        raise ss.stripe.StripeError("network down")

    monkeypatch.setattr(ss.stripe.Subscription, "retrieve", _fail)

    with pytest.raises(UpstreamUnavailable):
        ss.StripeBillingProvider().get_subscription_status("sub_123")
