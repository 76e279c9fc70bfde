"""Celery maintenance tasks and the grandfathering ops CLI, run against the in-memory store."""
import json
import sys
from datetime import timedelta

import pytest

from fixtures.entitlement_fixtures import make_user, utc
from services.billing_provider import ProviderSubscription
from services.entitlements import BillingEvent, SubscriptionStatus, Tier
from services.entitlements import factory
from tasks import entitlement_tasks


@pytest.fixture
def patched_services(services, monkeypatch):
    monkeypatch.setattr(entitlement_tasks, "services_from_settings", lambda _settings: services)
    monkeypatch.setattr(factory, "services_from_settings", lambda _settings: services)
    return services


def _lapsed_grandfathered(services, clock):
    services.store.create_user(
        make_user("lapsed", created_at=utc(2025, 6, 1), tier=Tier.GRANDFATHERED, grandfathered_until=clock.now() - timedelta(hours=30))
    )


def test_cleanup_task(patched_services, clock):
    _lapsed_grandfathered(patched_services, clock)

    result = entitlement_tasks.cleanup_expired_grandfathering_task()

    assert result == {"processed": 1, "cleaned": 1, "errors": []}
    assert patched_services.store.get_user("lapsed").subscription_tier == Tier.FREE


def test_warnings_task_respects_disabled_notifications(patched_services):
    result = entitlement_tasks.send_grandfathering_warnings_task()
    assert result["warnings_sent"] == 0


def test_lapsed_subscription_sweep_task(patched_services, clock):
    services = patched_services
    services.store.create_user(make_user("paid", created_at=utc(2025, 7, 27)))
    services.reconciler.apply(
        BillingEvent("evt_1", "activated", "sub_1", {"current_period_end": clock.now() + timedelta(days=1)}, user_id="paid")
    )
    services.reconciler.apply(BillingEvent("evt_2", "cancelled", "sub_1"))
    clock.advance(timedelta(days=2))

    result = entitlement_tasks.expire_lapsed_subscriptions_task()

    assert result["downgraded"] == 1
    assert services.store.get_user("paid").subscription_tier == Tier.FREE


def test_provider_reconciliation_skips_without_stripe(patched_services, monkeypatch):
    from services import stripe_service

    def _unconfigured():
        raise RuntimeError("Stripe not configured (missing: STRIPE_SECRET_KEY)")

    monkeypatch.setattr(stripe_service, "StripeBillingProvider", _unconfigured)

    result = entitlement_tasks.reconcile_billing_provider_task()
    assert result["status"] == "skipped"


def test_provider_reconciliation_applies_missed_expiry(patched_services, clock, monkeypatch):
    from services import stripe_service

    services = patched_services
    services.store.create_user(make_user("paid", created_at=utc(2025, 7, 27)))
    services.reconciler.apply(
        BillingEvent("evt_1", "activated", "sub_1", {"current_period_end": clock.now() - timedelta(hours=1)}, user_id="paid")
    )

    class _Provider:
        def get_subscription_status(self, external_subscription_id):
            return ProviderSubscription(external_subscription_id, event_type="expired", status="canceled")

    monkeypatch.setattr(stripe_service, "StripeBillingProvider", _Provider)

    result = entitlement_tasks.reconcile_billing_provider_task()

    assert result == {"processed": 1, "applied": 1, "errors": []}
    assert services.store.get_subscription_by_external_id("sub_1").status == SubscriptionStatus.EXPIRED
    assert services.store.get_user("paid").subscription_tier == Tier.FREE


def _run_cli(monkeypatch, capsys, *argv):
    import core.logging
    from scripts import grandfathering_admin

    monkeypatch.setattr(core.logging, "setup_logging", lambda: None)
    monkeypatch.setattr(sys, "argv", ["grandfathering_admin.py", *argv])
    code = grandfathering_admin.main()
    return code, capsys.readouterr().out


def test_cli_dry_run_changes_nothing(patched_services, clock, monkeypatch, capsys):
    _lapsed_grandfathered(patched_services, clock)

    code, out = _run_cli(monkeypatch, capsys, "cleanup")

    assert code == 0
    assert "MODE DRY_RUN" in out
    assert patched_services.store.get_user("lapsed").subscription_tier == Tier.GRANDFATHERED


def test_cli_commit_cleanup(patched_services, clock, monkeypatch, capsys):
    _lapsed_grandfathered(patched_services, clock)

    code, out = _run_cli(monkeypatch, capsys, "cleanup", "--commit")

    assert code == 0
    assert "MODE COMMIT" in out
    assert '"cleaned": 1' in out
    assert patched_services.store.get_user("lapsed").subscription_tier == Tier.FREE


def test_cli_grant_validation(patched_services, monkeypatch, capsys):
    assert _run_cli(monkeypatch, capsys, "grant")[0] == 2
    code, out = _run_cli(monkeypatch, capsys, "grant", "--user-id", "u1", "--expires-at", "2025-09-01T00:00:00")
    assert code == 2
    assert "UTC offset" in out
    code, out = _run_cli(monkeypatch, capsys, "grant", "--user-id", "ghost", "--commit")
    assert code == 2
    assert "ghost" in out


def test_cli_stats(patched_services, clock, monkeypatch, capsys):
    _lapsed_grandfathered(patched_services, clock)
    code, out = _run_cli(monkeypatch, capsys, "stats")
    assert code == 0
    assert json.loads(out)["grandfathered_users"] == 1
