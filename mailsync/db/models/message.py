from sqlalchemy import Column, String, Text, Integer, Boolean, DateTime, ForeignKey, UniqueConstraint, Index, JSON, Uuid
import uuid

from mailsync.db.database import Base
from mailsync.utils.datetime_utils import utc_now


class CachedMessage(Base):
    """Local copy of a provider message, keyed by (account_id, provider_message_id)."""

    __tablename__ = "cached_messages"
    __table_args__ = (
        UniqueConstraint("account_id", "provider_message_id", name="uq_cached_messages_account_provider_id"),
        Index("ix_cached_messages_account_read", "account_id", "is_read"),
        Index("ix_cached_messages_account_received", "account_id", "received_at"),
    )

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    account_id = Column(Uuid, ForeignKey("email_accounts.id", ondelete="CASCADE"), nullable=False)
    provider_message_id = Column(String(255), nullable=False)
    thread_id = Column(String(255))

    # Provider-sourced fields, overwritten on every sync
    sender_name = Column(String(500))
    sender_email = Column(String(500))
    recipient_emails = Column(JSON, default=list)
    subject = Column(Text)
    snippet = Column(Text)
    body_html = Column(Text)
    body_text = Column(Text)
    received_at = Column(DateTime(timezone=True))
    is_read = Column(Boolean, nullable=False, default=False)
    is_starred = Column(Boolean, nullable=False, default=False)
    is_pinned = Column(Boolean, nullable=False, default=False)
    has_attachments = Column(Boolean, nullable=False, default=False)
    attachment_count = Column(Integer, nullable=False, default=0)
    labels = Column(JSON, default=list)

    created_at = Column(DateTime(timezone=True), default=utc_now)
    updated_at = Column(DateTime(timezone=True), default=utc_now, onupdate=utc_now)

    def to_dict(self):
        return {
            "id": str(self.id),
            "account_id": str(self.account_id),
            "provider_message_id": self.provider_message_id,
            "thread_id": self.thread_id,
            "sender_name": self.sender_name,
            "sender_email": self.sender_email,
            "recipient_emails": self.recipient_emails or [],
            "subject": self.subject,
            "snippet": self.snippet,
            "received_at": self.received_at.isoformat() if self.received_at else None,
            "is_read": self.is_read,
            "is_starred": self.is_starred,
            "is_pinned": self.is_pinned,
            "has_attachments": self.has_attachments,
            "attachment_count": self.attachment_count,
            "labels": self.labels or [],
        }
