from celery import Celery
from celery.schedules import crontab

from app.core.config import settings

celery_app = Celery(
    "ledgermirror",
    broker=settings.redis_url,
    backend=settings.redis_url,
)

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    task_track_started=True,
    task_acks_late=True,
    worker_prefetch_multiplier=1,
)

# ─── Scheduled tasks ──────────────────────────
celery_app.conf.beat_schedule = {
    "ledger-incremental-sync-hourly": {
        "task": "app.services.sync.scheduled_sync",
        "schedule": crontab(minute=15),
        "args": ("incremental",),
    },
    "ledger-full-sync-daily": {
        "task": "app.services.sync.scheduled_sync",
        "schedule": crontab(hour=6, minute=0),
        "args": ("full",),
    },
}

# Explicitly include task modules so the worker registers them on startup.
# autodiscover_tasks() only looks for a "tasks.py" file, which we don't use.
celery_app.conf.include = [
    "app.services.sync",
    "app.services.webhooks",
]
