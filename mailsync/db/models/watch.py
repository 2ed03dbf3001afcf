from sqlalchemy import Column, String, Boolean, DateTime, ForeignKey, Uuid
from sqlalchemy.orm import relationship
import uuid

from mailsync.db.database import Base
from mailsync.utils.datetime_utils import utc_now


class WatchRegistration(Base):
    """Provider push registration: a Gmail watch or an Outlook Graph subscription."""

    __tablename__ = "watch_registrations"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    account_id = Column(Uuid, ForeignKey("email_accounts.id", ondelete="CASCADE"), nullable=False, unique=True)
    provider = Column(String(20), nullable=False)
    subscription_id = Column(String(255), index=True)  # Outlook only
    history_id = Column(String(64))  # Gmail incremental cursor
    expiration = Column(DateTime(timezone=True))
    is_active = Column(Boolean, nullable=False, default=True)

    created_at = Column(DateTime(timezone=True), default=utc_now)
    updated_at = Column(DateTime(timezone=True), default=utc_now, onupdate=utc_now)

    account = relationship("EmailAccount", back_populates="watch")

    def to_dict(self):
        return {
            "id": str(self.id),
            "account_id": str(self.account_id),
            "provider": self.provider,
            "subscription_id": self.subscription_id,
            "history_id": self.history_id,
            "expiration": self.expiration.isoformat() if self.expiration else None,
            "is_active": self.is_active,
        }
