"""
Email Synchronization Celery Tasks

Every scheduled unit of work is a stateless task that opens its own session.
"""

from typing import Optional, Dict, Any

from celery import Task

from mailsync.celery_app import celery_app
from mailsync.config import settings
from mailsync.db.database import get_celery_db_session
from mailsync.services.email_sync_service import email_sync_service
from mailsync.services.sync_job_manager import sync_job_manager
from mailsync.services.watch_service import watch_service
from mailsync.services.webhook_queue_processor import webhook_queue_processor
from mailsync.utils.logging import get_logger

logger = get_logger("email_sync_tasks")


class EmailSyncTask(Task):
    """Base class for email sync tasks with error handling."""

    def on_failure(self, exc, task_id, args, kwargs, einfo):
        logger.error(f"Email sync task {task_id} failed: {exc}")

    def on_success(self, retval, task_id, args, kwargs):
        logger.info(f"Email sync task {task_id} completed successfully")


@celery_app.task(base=EmailSyncTask, bind=True, max_retries=2, default_retry_delay=120)
def sync_account_task(self, account_id: str, max_messages: Optional[int] = None,
                      page_token: Optional[str] = None) -> Dict[str, Any]:
    """
    Full sync of one account.

    Args:
        account_id: Account UUID
        max_messages: Upper bound for this run
        page_token: Resume token from a previous run
    """
    try:
        with get_celery_db_session() as db:
            result = email_sync_service.sync_account(db, account_id, max_messages=max_messages, page_token=page_token)
        return result.to_response()
    except Exception as exc:
        logger.error(f"Sync task failed for account {account_id}: {exc}")
        if self.request.retries < self.max_retries:
            raise self.retry(countdown=120, exc=exc)
        raise


@celery_app.task(base=EmailSyncTask)
def background_sync_scheduler() -> Dict[str, Any]:
    """Queue syncs for active accounts that have not synced recently."""
    with get_celery_db_session() as db:
        accounts = email_sync_service.select_due_accounts(db)
        account_ids = [str(account.id) for account in accounts]

    gap = settings.background_sync_account_gap_seconds
    for index, account_id in enumerate(account_ids):
        sync_account_task.apply_async(
            args=[account_id],
            kwargs={"max_messages": settings.background_sync_max_messages},
            countdown=index * gap,
        )

    logger.info(f"Background sync queued {len(account_ids)} accounts")
    return {"scheduled": len(account_ids), "accountIds": account_ids}


@celery_app.task(base=EmailSyncTask)
def process_webhook_queue() -> Dict[str, int]:
    with get_celery_db_session() as db:
        return webhook_queue_processor.process_batch(db)


@celery_app.task(base=EmailSyncTask)
def cleanup_stuck_jobs() -> Dict[str, int]:
    with get_celery_db_session() as db:
        cleaned = sync_job_manager.cleanup_stuck_jobs(db)
    return {"cleaned_up": cleaned}


@celery_app.task(base=EmailSyncTask)
def cleanup_stuck_webhooks() -> Dict[str, int]:
    with get_celery_db_session() as db:
        recovered = webhook_queue_processor.cleanup_stuck_items(db)
    return {"recovered": recovered}


@celery_app.task(base=EmailSyncTask)
def renew_watches() -> Dict[str, int]:
    with get_celery_db_session() as db:
        return watch_service.renew_expiring(db)


@celery_app.task(base=EmailSyncTask)
def setup_watches(provider: Optional[str] = None) -> Dict[str, Any]:
    with get_celery_db_session() as db:
        return watch_service.setup_all(db, provider=provider)
