"""
Message Cache Reconciler

Idempotent upsert of normalized provider messages into ``cached_messages``
plus the account-level bookkeeping that follows a sync.
"""

from dataclasses import dataclass, fields
from typing import Callable, Iterable, List, Optional

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from mailsync.db.models import CachedMessage, EmailAccount
from mailsync.services.email_connectors.base_connector import NormalizedMessage
from mailsync.utils.datetime_utils import utc_now
from mailsync.utils.logging import get_logger

# Everything the provider owns; overwritten on every sync
PROVIDER_FIELDS = tuple(f.name for f in fields(NormalizedMessage) if f.name != "provider_message_id")


@dataclass
class UpsertResult:
    created: int = 0
    updated: int = 0
    skipped: int = 0

    @property
    def processed(self) -> int:
        return self.created + self.updated


class MessageReconciler:

    def __init__(self):
        self.logger = get_logger("message_reconciler")

    def _find(self, db: Session, account_id, provider_message_id: str) -> Optional[CachedMessage]:
        return (
            db.query(CachedMessage)
            .filter_by(account_id=account_id, provider_message_id=provider_message_id)
            .first()
        )

    def upsert(self, db: Session, account_id, message: NormalizedMessage) -> bool:
        """
        Insert or update one message keyed on (account_id, provider_message_id).

        Returns:
            True if a row was created, False if an existing row was updated
        """
        values = {name: getattr(message, name) for name in PROVIDER_FIELDS}
        existing = self._find(db, account_id, message.provider_message_id)
        if existing:
            for name, value in values.items():
                setattr(existing, name, value)
            existing.updated_at = utc_now()
            db.flush()
            return False

        db.add(CachedMessage(account_id=account_id, provider_message_id=message.provider_message_id, **values))
        db.flush()
        return True

    def upsert_batch(
        self,
        db: Session,
        account_id,
        messages: Iterable[NormalizedMessage],
        on_progress: Optional[Callable[[int], None]] = None,
    ) -> UpsertResult:
        """
        Upsert messages one by one inside savepoints.

        A message that fails to write is logged and skipped; the rest of the
        batch still lands. on_progress receives the running processed count.
        """
        result = UpsertResult()
        for message in messages:
            try:
                created = self._upsert_isolated(db, account_id, message)
            except SQLAlchemyError as e:
                result.skipped += 1
                self.logger.warning(f"Skipping message {message.provider_message_id}: {e}")
                continue

            if created:
                result.created += 1
            else:
                result.updated += 1
            if on_progress:
                on_progress(result.processed)

        db.commit()
        return result

    def _upsert_isolated(self, db: Session, account_id, message: NormalizedMessage) -> bool:
        try:
            with db.begin_nested():
                return self.upsert(db, account_id, message)
        except IntegrityError:
            # A concurrent sync inserted the same message first
            with db.begin_nested():
                return self.upsert(db, account_id, message)

    def refresh_unread_count(self, db: Session, account: EmailAccount) -> int:
        unread = (
            db.query(func.count(CachedMessage.id))
            .filter(CachedMessage.account_id == account.id, CachedMessage.is_read.is_(False))
            .scalar()
        ) or 0
        account.unread_count = unread
        db.commit()
        return unread

    def refresh_account_metadata(self, db: Session, account: EmailAccount) -> int:
        """Recompute the unread count from the cache and stamp last_synced_at."""
        account.last_synced_at = utc_now()
        return self.refresh_unread_count(db, account)

    def mark_read(self, db: Session, account_id, provider_message_ids: List[str]) -> int:
        if not provider_message_ids:
            return 0
        count = (
            db.query(CachedMessage)
            .filter(CachedMessage.account_id == account_id,
                    CachedMessage.provider_message_id.in_(provider_message_ids))
            .update({CachedMessage.is_read: True, CachedMessage.updated_at: utc_now()},
                    synchronize_session="fetch")
        )
        db.commit()
        return count

    def remove(self, db: Session, account_id, provider_message_ids: List[str]) -> int:
        if not provider_message_ids:
            return 0
        count = (
            db.query(CachedMessage)
            .filter(CachedMessage.account_id == account_id,
                    CachedMessage.provider_message_id.in_(provider_message_ids))
            .delete(synchronize_session="fetch")
        )
        db.commit()
        return count


# Global instance
message_reconciler = MessageReconciler()
