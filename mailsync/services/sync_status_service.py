from datetime import datetime, time, timedelta
from typing import Any, Dict

from sqlalchemy import func
from sqlalchemy.orm import Session

from mailsync.config import settings
from mailsync.db.models import SyncJob, SyncJobStatus, WebhookQueueItem, WebhookStatus
from mailsync.utils.datetime_utils import utc_now, to_utc
from mailsync.utils.logging import get_logger

logger = get_logger("sync_status_service")


class SyncStatusService:
    """Operational snapshot of sync jobs and the webhook queue."""

    def get_metrics(self, db: Session) -> Dict[str, Any]:
        now = utc_now()
        day_ago = now - timedelta(hours=24)
        stale_cutoff = now - timedelta(minutes=settings.sync_stuck_job_minutes)
        start_of_day = datetime.combine(now.date(), time.min, tzinfo=now.tzinfo)

        active_jobs = db.query(SyncJob).filter(SyncJob.status == SyncJobStatus.PROCESSING).count()
        stuck_jobs = (
            db.query(SyncJob)
            .filter(SyncJob.status == SyncJobStatus.PROCESSING, SyncJob.updated_at < stale_cutoff)
            .count()
        )
        failed_jobs_24h = (
            db.query(SyncJob)
            .filter(SyncJob.status == SyncJobStatus.FAILED, SyncJob.created_at >= day_ago)
            .count()
        )

        completed = (
            db.query(SyncJob.started_at, SyncJob.completed_at)
            .filter(
                SyncJob.status == SyncJobStatus.COMPLETED,
                SyncJob.completed_at >= day_ago,
                SyncJob.started_at.is_not(None),
            )
            .all()
        )
        durations = [
            (to_utc(done) - to_utc(started)).total_seconds() for started, done in completed if done and started
        ]
        avg_sync_seconds = round(sum(durations) / len(durations), 2) if durations else 0

        pending_webhooks = (
            db.query(WebhookQueueItem).filter(WebhookQueueItem.status == WebhookStatus.PENDING).count()
        )
        failed_webhooks = (
            db.query(WebhookQueueItem).filter(WebhookQueueItem.status == WebhookStatus.FAILED).count()
        )

        messages_today = (
            db.query(func.coalesce(func.sum(SyncJob.messages_synced), 0))
            .filter(SyncJob.status == SyncJobStatus.COMPLETED, SyncJob.completed_at >= start_of_day)
            .scalar()
        ) or 0

        metrics = {
            "activeJobs": active_jobs,
            "failedJobs24h": failed_jobs_24h,
            "stuckJobs": stuck_jobs,
            "avgSyncTimeSeconds": avg_sync_seconds,
            "pendingWebhooks": pending_webhooks,
            "failedWebhooks": failed_webhooks,
            "messagesSyncedToday": int(messages_today),
            "timestamp": now.isoformat(),
        }
        logger.debug(f"Sync status: {metrics}")
        return metrics


# Global instance
sync_status_service = SyncStatusService()
