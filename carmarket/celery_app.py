"""Celery application configuration.

Uses Redis as broker when configured, falls back to memory:// for local dev/tests.
"""

from celery import Celery
from celery.schedules import crontab

from carmarket.config.settings import get_settings

settings = get_settings()

app = Celery("carmarket")

app.conf.update(
    broker_url=settings.effective_celery_broker,
    result_backend=settings.effective_celery_backend,
    task_serializer="json",
    result_serializer="json",
    accept_content=["json"],
    timezone="UTC",
    enable_utc=True,
    task_acks_late=True,
    worker_prefetch_multiplier=1,
    beat_schedule={
        "refresh-pending-history": {
            "task": "carmarket.tasks.history_tasks.refresh_pending_history",
            "schedule": crontab(minute=30, hour="*/2"),
        },
        "cleanup-pending-payment-listings": {
            "task": "carmarket.tasks.cleanup_tasks.cleanup_pending_payment_listings",
            "schedule": crontab(minute=0),  # Hourly
        },
        "cleanup-stale-history": {
            "task": "carmarket.tasks.cleanup_tasks.cleanup_stale_history",
            "schedule": crontab(minute=15, hour=3),  # Daily at 03:15 UTC
        },
    },
)

app.autodiscover_tasks(["carmarket.tasks"])
