"""
Webhook Queue Processor

Drains ``webhook_queue`` in small batches. Items run one after another with a
short pause between them so a burst of notifications cannot trip provider
rate limits. Failures are rescheduled with exponential backoff until the
retry ceiling, then parked as ``failed``.
"""

import time
from datetime import timedelta
from typing import Dict, List, Optional

from sqlalchemy import or_
from sqlalchemy.orm import Session

from mailsync.config import settings
from mailsync.db.models import WebhookQueueItem, WebhookStatus
from mailsync.services.email_sync_service import SyncResult, email_sync_service
from mailsync.utils.backoff import next_retry_at
from mailsync.utils.datetime_utils import utc_now
from mailsync.utils.logging import get_logger
from mailsync.utils.metrics import MetricsCollector

STUCK_ITEM_ERROR = "Webhook processing timeout"


class WebhookQueueProcessor:

    def __init__(self, sync_service=None, sleep=time.sleep):
        self.sync_service = sync_service or email_sync_service
        self.sleep = sleep
        self.logger = get_logger("webhook_queue_processor")

    def claim_batch(self, db: Session, limit: Optional[int] = None) -> List[WebhookQueueItem]:
        """Move up to limit due pending items to processing, oldest first."""
        limit = limit or settings.webhook_batch_size
        now = utc_now()
        items = (
            db.query(WebhookQueueItem)
            .filter(
                WebhookQueueItem.status == WebhookStatus.PENDING,
                or_(WebhookQueueItem.next_retry_at.is_(None), WebhookQueueItem.next_retry_at <= now),
            )
            .order_by(WebhookQueueItem.created_at.asc())
            .limit(limit)
            .with_for_update(skip_locked=True)
            .all()
        )
        for item in items:
            item.status = WebhookStatus.PROCESSING
            item.updated_at = now
        db.commit()
        return items

    def process_batch(self, db: Session) -> Dict[str, int]:
        """
        Process one batch of due queue items.

        Returns:
            {"processed", "succeeded", "failed"} for this run
        """
        items = self.claim_batch(db)
        stats = {"processed": 0, "succeeded": 0, "failed": 0}
        if not items:
            self.logger.debug("No pending webhook items")
            return stats

        self.logger.info(f"Processing {len(items)} webhook items")
        for index, item in enumerate(items):
            if index:
                self.sleep(settings.webhook_item_delay_seconds)

            stats["processed"] += 1
            if self.process_item(db, item):
                stats["succeeded"] += 1
            else:
                stats["failed"] += 1

        pending = db.query(WebhookQueueItem).filter(WebhookQueueItem.status == WebhookStatus.PENDING).count()
        MetricsCollector.set_webhook_pending(pending)
        self.logger.info(
            f"Webhook batch done: {stats['succeeded']} succeeded, {stats['failed']} failed, {pending} still pending"
        )
        return stats

    def process_item(self, db: Session, item: WebhookQueueItem) -> bool:
        history_id = item.history_id if item.provider == "gmail" else None
        try:
            result = self.sync_service.sync_incremental(db, item.account_id, history_id=history_id)
        except Exception as e:
            db.rollback()
            self.logger.error(f"Webhook item {item.id} raised: {e}")
            result = SyncResult(error=str(e) or e.__class__.__name__)

        if result.success:
            self.mark_completed(db, item)
            return True

        self.record_failure(db, item, result.error or "Sync failed", terminal=result.auth_error)
        return False

    def mark_completed(self, db: Session, item: WebhookQueueItem):
        now = utc_now()
        item.status = WebhookStatus.COMPLETED
        item.processed_at = now
        item.updated_at = now
        item.error_message = None
        db.commit()
        MetricsCollector.record_webhook_item(item.provider, WebhookStatus.COMPLETED)

    def record_failure(self, db: Session, item: WebhookQueueItem, error: str, terminal: bool = False):
        """
        Apply the retry state machine to a failed item.

        The item goes back to pending with ``next_retry_at = now + 2^retry_count
        minutes`` until retry_count reaches the ceiling; then, or at once when
        terminal, it is marked failed and never picked up again.
        """
        now = utc_now()
        item.retry_count = (item.retry_count or 0) + 1
        item.error_message = error
        item.updated_at = now

        if terminal or item.retry_count >= settings.webhook_max_retries:
            item.status = WebhookStatus.FAILED
            item.processed_at = now
            item.next_retry_at = None
            self.logger.error(f"Webhook item {item.id} failed permanently after {item.retry_count} attempts: {error}")
        else:
            item.status = WebhookStatus.PENDING
            item.next_retry_at = next_retry_at(
                item.retry_count, unit_seconds=settings.webhook_retry_base_seconds, now=now
            )
            self.logger.warning(
                f"Webhook item {item.id} attempt {item.retry_count} failed, retrying at "
                f"{item.next_retry_at.isoformat()}: {error}"
            )

        db.commit()
        MetricsCollector.record_webhook_item(item.provider, item.status)

    def cleanup_stuck_items(self, db: Session, stale_after: Optional[timedelta] = None) -> int:
        """Return items left in processing past the threshold to the retry state machine."""
        stale_after = stale_after or timedelta(minutes=settings.webhook_stuck_minutes)
        cutoff = utc_now() - stale_after
        stuck = (
            db.query(WebhookQueueItem)
            .filter(WebhookQueueItem.status == WebhookStatus.PROCESSING, WebhookQueueItem.updated_at < cutoff)
            .all()
        )
        for item in stuck:
            self.record_failure(db, item, STUCK_ITEM_ERROR)

        if stuck:
            self.logger.warning(f"Recovered {len(stuck)} webhook items stuck in processing")
        return len(stuck)


# Global instance
webhook_queue_processor = WebhookQueueProcessor()
