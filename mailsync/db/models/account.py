"""
Account and OAuth token models.

An account is created when a user completes OAuth for a Gmail or Outlook
mailbox. It is never deleted by the sync subsystem; irrecoverable auth failures
only flip ``is_active``.
"""

from sqlalchemy import Column, String, Text, Integer, Boolean, DateTime, ForeignKey, Uuid
from sqlalchemy.orm import relationship
import uuid

from mailsync.db.database import Base
from mailsync.utils.datetime_utils import utc_now


class EmailAccount(Base):
    """A connected mailbox."""

    __tablename__ = "email_accounts"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    email = Column(String(255), nullable=False, index=True)
    provider = Column(String(20), nullable=False)  # gmail, outlook
    display_name = Column(String(255))
    is_active = Column(Boolean, nullable=False, default=True)

    last_synced_at = Column(DateTime(timezone=True))
    unread_count = Column(Integer, nullable=False, default=0)

    created_at = Column(DateTime(timezone=True), default=utc_now)
    updated_at = Column(DateTime(timezone=True), default=utc_now, onupdate=utc_now)

    token = relationship("OAuthToken", back_populates="account", uselist=False, cascade="all, delete-orphan")
    watch = relationship("WatchRegistration", back_populates="account", uselist=False, cascade="all, delete-orphan")

    def to_dict(self):
        return {
            "id": str(self.id),
            "email": self.email,
            "provider": self.provider,
            "display_name": self.display_name,
            "is_active": self.is_active,
            "last_synced_at": self.last_synced_at.isoformat() if self.last_synced_at else None,
            "unread_count": self.unread_count,
        }


class OAuthToken(Base):
    """OAuth token set for an account, refreshed in place."""

    __tablename__ = "oauth_tokens"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    account_id = Column(Uuid, ForeignKey("email_accounts.id", ondelete="CASCADE"), nullable=False, unique=True)
    access_token = Column(Text, nullable=False)
    refresh_token = Column(Text)
    expires_at = Column(DateTime(timezone=True))
    scope = Column(Text)

    created_at = Column(DateTime(timezone=True), default=utc_now)
    updated_at = Column(DateTime(timezone=True), default=utc_now, onupdate=utc_now)

    account = relationship("EmailAccount", back_populates="token")
