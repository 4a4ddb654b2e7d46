from celery import Celery
from celery.schedules import crontab

from ledgersync.core.config import settings

celery_app = Celery(
    "ledgersync",
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
    "sync-transactions-daily": {
        "task": "ledgersync.services.sync.sync_all_connections",
        "schedule": crontab(hour=6, minute=0),
    },
}

# Explicitly include task modules so the worker registers them on startup.
# autodiscover_tasks() only looks for a "tasks.py" file, which we don't use.
celery_app.conf.include = [
    "ledgersync.services.sync",
]
