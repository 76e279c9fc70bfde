"""
Scheduled entitlement maintenance.

Grandfathering cleanup and warnings, the lapsed-cancellation sweep and the
billing provider failsafe. Each run builds its services from settings so the
worker uses the same store backend as the API.
"""

from typing import Dict

from celery import Task

from core.config import settings
from services.entitlements.factory import services_from_settings
from tasks import celery_app
import logging

logger = logging.getLogger(__name__)


@celery_app.task(name="tasks.cleanup_expired_grandfathering", bind=True)
def cleanup_expired_grandfathering_task(self: Task) -> Dict:
    """Convert grandfathered users past expiry + grace to free."""
    result = services_from_settings(settings).grandfathering.cleanup_expired()
    logger.info(
        f"Grandfathering cleanup: {result['cleaned']}/{result['processed']} users converted",
        extra={"task_id": str(self.request.id), "errors": len(result["errors"])},
    )
    return result


@celery_app.task(name="tasks.send_grandfathering_warnings", bind=True)
def send_grandfathering_warnings_task(self: Task) -> Dict:
    result = services_from_settings(settings).grandfathering.send_expiration_warnings()
    logger.info(
        f"Grandfathering warnings: {result.get('message')}",
        extra={"task_id": str(self.request.id), "warnings_sent": result.get("warnings_sent", 0)},
    )
    return result


@celery_app.task(name="tasks.expire_lapsed_subscriptions", bind=True)
def expire_lapsed_subscriptions_task(self: Task) -> Dict:
    """Downgrade premium users whose cancelled subscription period has ended."""
    result = services_from_settings(settings).reconciler.expire_lapsed_subscriptions()
    logger.info(
        f"Lapsed subscription sweep: {result['downgraded']}/{result['processed']} users downgraded",
        extra={"task_id": str(self.request.id), "errors": len(result["errors"])},
    )
    return result


@celery_app.task(name="tasks.reconcile_billing_provider", bind=True)
def reconcile_billing_provider_task(self: Task) -> Dict:
    """
    Re-read active subscriptions whose period has ended from the provider.

    Skipped (not failed) when the provider is not configured.
    """
    from services.stripe_service import StripeBillingProvider

    try:
        provider = StripeBillingProvider()
    except RuntimeError as e:
        logger.warning(f"Billing reconciliation skipped: {e}")
        return {"status": "skipped", "message": str(e)}

    result = services_from_settings(settings).reconciler.reconcile_with_provider(provider)
    logger.info(
        f"Billing reconciliation: {result['applied']}/{result['processed']} subscriptions updated",
        extra={"task_id": str(self.request.id), "errors": len(result["errors"])},
    )
    return result
