from __future__ import annotations

from celery import Celery
from celery.schedules import crontab

from app.core.config import settings

celery = Celery(
    "foodshare_mailer",
    broker=settings.CELERY_BROKER_URL,
    backend=settings.CELERY_RESULT_BACKEND,
    include=["app.tasks.delivery_tasks"],
)

celery.conf.update(
    task_always_eager=settings.CELERY_TASK_ALWAYS_EAGER,
    task_eager_propagates=True,
    task_default_queue="default",
    timezone="UTC",
    enable_utc=True,
)

celery.conf.beat_schedule = {
    "dispatch-email-queue": {
        "task": "app.tasks.delivery_tasks.dispatch_queue",
        "schedule": crontab(),
    },
    "snapshot-provider-health": {
        "task": "app.tasks.delivery_tasks.snapshot_provider_health",
        "schedule": crontab(minute="*/5"),
    },
    "reclaim-stale-claims": {
        "task": "app.tasks.delivery_tasks.reclaim_stale_claims",
        "schedule": crontab(minute="*/15"),
    },
    "review-dead-letters": {
        "task": "app.tasks.delivery_tasks.review_dead_letters",
        "schedule": crontab(hour=9, minute=0),
    },
    "prune-retention": {
        "task": "app.tasks.delivery_tasks.prune_retention",
        "schedule": crontab(hour=3, minute=30, day_of_week="sunday"),
    },
}
