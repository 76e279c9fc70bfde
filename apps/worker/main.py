"""
Celery worker entry point for entitlement maintenance.

Runs the grandfathering sweeps, the lapsed-cancellation sweep and the billing
provider failsafe defined in the API's tasks package (beat schedule included).
"""
import logging
import sys

# API source is mounted at /api in the worker container
sys.path.insert(0, '/api')

from celery.signals import worker_ready  # noqa: E402

from core.config import settings  # noqa: E402
from core.logging import setup_logging  # noqa: E402
from tasks import celery_app  # noqa: E402

setup_logging()
logger = logging.getLogger(__name__)

celery_app.autodiscover_tasks(['tasks'])


@worker_ready.connect
def _log_ready(sender=None, **kwargs):
    logger.info(
        "Entitlement worker ready",
        extra={"store_backend": settings.ENTITLEMENT_STORE_BACKEND, "scheduled": sorted(celery_app.conf.beat_schedule)},
    )


@celery_app.task(name="worker.health_check")
def health_check():
    """Liveness check; reports which entitlement store the worker is bound to."""
    return {"status": "ok", "store": settings.ENTITLEMENT_STORE_BACKEND}
