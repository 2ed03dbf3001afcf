"""
Webhook queue model.

Push notifications are persisted here by the ingress endpoints and drained by
the queue processor, so a slow sync never blocks a provider's delivery.
"""

from sqlalchemy import Column, String, Text, Integer, DateTime, ForeignKey, Index, Uuid
import uuid

from mailsync.db.database import Base
from mailsync.utils.datetime_utils import utc_now


class WebhookStatus:
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class WebhookQueueItem(Base):
    __tablename__ = "webhook_queue"
    __table_args__ = (
        Index("ix_webhook_queue_status_retry", "status", "next_retry_at"),
    )

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    account_id = Column(Uuid, ForeignKey("email_accounts.id", ondelete="CASCADE"), nullable=False, index=True)
    email_address = Column(String(255))
    provider = Column(String(20), nullable=False)
    history_id = Column(String(64))  # Gmail historyId / Outlook resource id
    change_type = Column(String(50))
    status = Column(String(20), nullable=False, default=WebhookStatus.PENDING)
    retry_count = Column(Integer, nullable=False, default=0)
    next_retry_at = Column(DateTime(timezone=True))
    error_message = Column(Text)

    created_at = Column(DateTime(timezone=True), default=utc_now)
    updated_at = Column(DateTime(timezone=True), default=utc_now, onupdate=utc_now)
    processed_at = Column(DateTime(timezone=True))

    def to_dict(self):
        return {
            "id": str(self.id),
            "account_id": str(self.account_id),
            "email_address": self.email_address,
            "provider": self.provider,
            "history_id": self.history_id,
            "change_type": self.change_type,
            "status": self.status,
            "retry_count": self.retry_count,
            "next_retry_at": self.next_retry_at.isoformat() if self.next_retry_at else None,
            "error_message": self.error_message,
            "processed_at": self.processed_at.isoformat() if self.processed_at else None,
        }
