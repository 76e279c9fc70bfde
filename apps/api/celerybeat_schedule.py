"""
Celery Beat Schedule Configuration

Defines periodic tasks that run on a schedule.
"""

from celery.schedules import crontab

# Schedule configuration
beat_schedule = {
    # Downgrade grandfathered users whose grace period has ended.
    'grandfathering-cleanup': {
        'task': 'tasks.cleanup_expired_grandfathering',
        'schedule': crontab(minute=5),  # Hourly
    },
    # Expiration warnings (7/3/1 days out by default) - daily at 9 AM UTC
    'grandfathering-expiration-warnings': {
        'task': 'tasks.send_grandfathering_warnings',
        'schedule': crontab(hour=9, minute=0),
    },
    # Premium users whose cancelled period has lapsed
    'expire-lapsed-subscriptions': {
        'task': 'tasks.expire_lapsed_subscriptions',
        'schedule': crontab(minute=35),  # Hourly
    },
    # Failsafe for missed billing webhooks
    'reconcile-billing-provider': {
        'task': 'tasks.reconcile_billing_provider',
        'schedule': crontab(minute=15, hour='*/6'),
    },
}
