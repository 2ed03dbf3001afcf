from celery import Celery
from celery.signals import worker_process_init

from mailsync.config import settings

TASKS_MODULE = "mailsync.tasks.email_sync_tasks"
SYNC_QUEUE = "email_sync"

celery_app = Celery(
    "mailsync",
    broker=settings.celery_broker_url,
    backend=settings.celery_result_backend,
    include=[TASKS_MODULE]
)

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    task_track_started=True,
    # Hard limit sits above the 300s sync deadline so jobs fail themselves first
    task_time_limit=settings.celery_task_timeout,
    task_soft_time_limit=settings.celery_task_timeout - 30,
    worker_prefetch_multiplier=1,
    worker_max_tasks_per_child=1000,
    worker_concurrency=settings.celery_worker_concurrency,
    task_routes={f"{TASKS_MODULE}.*": {"queue": SYNC_QUEUE}},
    task_annotations={f"{TASKS_MODULE}.sync_account_task": {"rate_limit": "50/m"}},
    task_default_retry_delay=60,
    task_max_retries=3,
    result_expires=3600,
)

# Periodic task schedule (Celery Beat): task name -> interval in seconds
PERIODIC_TASKS = {
    "background-email-sync": ("background_sync_scheduler", 300.0),
    "process-webhook-queue": ("process_webhook_queue", 60.0),
    "cleanup-stuck-jobs": ("cleanup_stuck_jobs", 300.0),
    "cleanup-stuck-webhooks": ("cleanup_stuck_webhooks", 300.0),
    "renew-watches": ("renew_watches", 3600.0),
}

celery_app.conf.beat_schedule = {
    entry: {
        "task": f"{TASKS_MODULE}.{task}",
        "schedule": interval,
        "options": {"queue": SYNC_QUEUE},
    }
    for entry, (task, interval) in PERIODIC_TASKS.items()
}


@worker_process_init.connect
def init_worker_process(**kwargs):
    """Forked workers get their own log sinks and must not reuse the parent's pooled connections."""
    from mailsync.db.database import sync_engine
    from mailsync.utils.logging import setup_logging

    setup_logging()
    sync_engine.dispose(close=False)


if __name__ == "__main__":
    celery_app.start()
