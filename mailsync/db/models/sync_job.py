from sqlalchemy import Column, String, Text, Integer, DateTime, ForeignKey, Index, Uuid, text
import uuid

from mailsync.db.database import Base
from mailsync.utils.datetime_utils import utc_now


class SyncJobStatus:
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"

    TERMINAL = (COMPLETED, FAILED)


class SyncJob(Base):
    """One attempt to pull messages for an account."""

    __tablename__ = "sync_jobs"
    __table_args__ = (
        # At most one processing job per account
        Index(
            "uq_sync_jobs_account_processing",
            "account_id",
            unique=True,
            postgresql_where=text("status = 'processing'"),
            sqlite_where=text("status = 'processing'"),
        ),
        Index("ix_sync_jobs_status_updated", "status", "updated_at"),
    )

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    account_id = Column(Uuid, ForeignKey("email_accounts.id", ondelete="CASCADE"), nullable=False, index=True)
    status = Column(String(20), nullable=False, default=SyncJobStatus.PENDING)
    sync_type = Column(String(20), nullable=False, default="full")  # full, incremental

    started_at = Column(DateTime(timezone=True))
    completed_at = Column(DateTime(timezone=True))
    timeout_at = Column(DateTime(timezone=True))
    messages_synced = Column(Integer, nullable=False, default=0)
    error_message = Column(Text)

    created_at = Column(DateTime(timezone=True), default=utc_now)
    updated_at = Column(DateTime(timezone=True), default=utc_now, onupdate=utc_now)

    def to_dict(self):
        return {
            "id": str(self.id),
            "account_id": str(self.account_id),
            "status": self.status,
            "sync_type": self.sync_type,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "messages_synced": self.messages_synced,
            "error_message": self.error_message,
        }
