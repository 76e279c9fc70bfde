"""
Celery app for entitlement maintenance.

The API never enqueues work here; every task runs from the beat schedule in
celerybeat_schedule.py. Tasks are sweeps over the store and are safe to
re-run, so late acks are used and a crashed worker simply repeats one.
"""
from celery import Celery
from core.config import settings
from celerybeat_schedule import beat_schedule

celery_app = Celery(
    "workout_entitlements",
    broker=settings.CELERY_BROKER_URL,
    backend=settings.CELERY_RESULT_BACKEND,
)

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    task_default_queue="entitlements",
    task_acks_late=True,
    worker_prefetch_multiplier=1,
    task_time_limit=15 * 60,
    task_soft_time_limit=10 * 60,
    result_expires=24 * 3600,
    beat_schedule=beat_schedule,
)

# Register tasks
from . import entitlement_tasks  # noqa: E402

__all__ = ["celery_app"]
