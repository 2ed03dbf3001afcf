"""
Email Sync Service

Runs one sync for one account: token, job, paginated fetch, cache upsert,
account bookkeeping. Synchronous throughout so it can run inside Celery
workers and sync FastAPI handlers alike.
"""

import time
import uuid
from dataclasses import dataclass
from datetime import timedelta
from typing import Callable, Dict, Any, List, Optional, Tuple

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from mailsync.config import settings
from mailsync.db.models import EmailAccount, SyncJob, SyncJobStatus, WatchRegistration
from mailsync.services.email_connectors import (
    AuthExpiredError,
    BaseEmailConnector,
    CursorExpiredError,
    EmailConnectorError,
    ProviderAuthError,
    SyncTimeoutError,
    UnsupportedProviderError,
    connector_factory,
)
from mailsync.services.message_reconciler import message_reconciler
from mailsync.services.sync_job_manager import JobAlreadyClosedError, SyncAlreadyRunningError, sync_job_manager
from mailsync.services.token_store import token_store
from mailsync.utils.datetime_utils import seconds_until, utc_now
from mailsync.utils.logging import get_logger
from mailsync.utils.metrics import MetricsCollector

RECONNECT_REQUIRED = "Authorization expired or revoked; reconnect the account"


@dataclass
class SyncResult:
    """Outcome of a sync call, shaped for the JSON invocation surface."""
    success: bool = False
    synced: int = 0
    has_more: bool = False
    next_page_token: Optional[str] = None
    job_id: Optional[str] = None
    error: Optional[str] = None
    auth_error: bool = False
    already_syncing: bool = False

    def to_response(self) -> Dict[str, Any]:
        response = {
            "success": self.success,
            "synced": self.synced,
            "hasMore": self.has_more,
        }
        if self.next_page_token:
            response["nextPageToken"] = self.next_page_token
        if self.job_id:
            response["jobId"] = self.job_id
        if self.error:
            response["error"] = self.error
            response["authError"] = self.auth_error
        if self.already_syncing:
            response["alreadySyncing"] = True
        return response


def as_uuid(value) -> Optional[uuid.UUID]:
    if isinstance(value, uuid.UUID):
        return value
    try:
        return uuid.UUID(str(value))
    except (TypeError, ValueError):
        return None


# (db, account, connector, access_token, job) -> (synced, next_page_token)
SyncRunner = Callable[[Session, EmailAccount, BaseEmailConnector, str, SyncJob], Tuple[int, Optional[str]]]


class EmailSyncService:

    def __init__(self, tokens=None, jobs=None, reconciler=None, factory=None):
        self.tokens = tokens or token_store
        self.jobs = jobs or sync_job_manager
        self.reconciler = reconciler or message_reconciler
        self.factory = factory or connector_factory
        self.logger = get_logger("email_sync_service")

    def sync_account(
        self,
        db: Session,
        account_id,
        max_messages: Optional[int] = None,
        page_token: Optional[str] = None,
    ) -> SyncResult:
        """
        Full sync: page through the mailbox newest first.

        Args:
            db: Synchronous database session
            account_id: Account UUID
            max_messages: Upper bound for this run (default from settings)
            page_token: Resume from a previous run's nextPageToken

        Returns:
            SyncResult; ``has_more`` is true when the provider still had a next page
        """
        limit = max_messages or settings.sync_default_max_messages

        def runner(db, account, connector, access_token, job):
            return self._page_through(db, account, connector, access_token, job, limit, page_token)

        return self._execute(db, account_id, "full", runner)

    def sync_incremental(self, db: Session, account_id, history_id: Optional[str] = None) -> SyncResult:
        """
        Sync only what changed since the stored cursor.

        Gmail walks the History API from the watch registration's history id
        and falls back to a bounded full sync when that id has expired. The
        stored cursor then advances. Outlook has no cursor and re-reads the
        newest page.
        """

        def runner(db, account, connector, access_token, job):
            watch = db.query(WatchRegistration).filter_by(account_id=account.id).first()
            cursor = watch.history_id if watch else None

            try:
                changes = connector.fetch_changes(access_token, cursor, deadline=job.timeout_at)
                result = self.reconciler.upsert_batch(db, account.id, changes.messages)
                if changes.deleted_ids:
                    self.reconciler.remove(db, account.id, changes.deleted_ids)
                synced, new_cursor = result.processed, changes.new_cursor
                self.jobs.checkpoint(db, job, synced)
            except CursorExpiredError as e:
                self.logger.warning(f"Incremental cursor unusable for {account.email} ({e}); running full sync")
                synced, _ = self._page_through(
                    db, account, connector, access_token, job, settings.background_sync_max_messages, None
                )
                new_cursor = None

            new_cursor = new_cursor or history_id
            if watch and new_cursor and connector.provider == "gmail":
                watch.history_id = str(new_cursor)
                watch.updated_at = utc_now()
                db.commit()
            return synced, None

        return self._execute(db, account_id, "incremental", runner)

    def _execute(self, db: Session, account_id, sync_type: str, runner: SyncRunner) -> SyncResult:
        account = db.get(EmailAccount, as_uuid(account_id)) if as_uuid(account_id) else None
        if not account:
            self.logger.error(f"Account {account_id} not found")
            return SyncResult(error="Account not found")
        if not account.is_active:
            return SyncResult(error=f"Account {account.email} is inactive; {RECONNECT_REQUIRED}", auth_error=True)

        try:
            connector = self.factory.for_account(account)
        except UnsupportedProviderError as e:
            return SyncResult(error=str(e))

        # Token before job: a revoked account must not leave a job behind
        try:
            access_token = self.tokens.get_valid_access_token(db, account)
        except AuthExpiredError as e:
            self.tokens.deactivate_account(db, account, str(e))
            return SyncResult(error=RECONNECT_REQUIRED, auth_error=True)
        except EmailConnectorError as e:
            self.logger.error(f"Could not obtain access token for {account.email}: {e}")
            return SyncResult(error=f"Token refresh failed: {e}")

        try:
            job = self.jobs.open_job(db, account.id, sync_type)
        except SyncAlreadyRunningError as e:
            self.logger.info(str(e))
            return SyncResult(
                error="Sync already in progress",
                already_syncing=True,
                job_id=str(e.job_id) if e.job_id else None,
            )

        self.logger.info(f"Starting {sync_type} sync for {account.email} (job {job.id})")
        started = time.monotonic()
        provider = account.provider

        try:
            synced, next_token = runner(db, account, connector, access_token, job)
        except ProviderAuthError as e:
            return self._abort(db, account, job, provider, started, e, auth=True)
        except (EmailConnectorError, SQLAlchemyError) as e:
            return self._abort(db, account, job, provider, started, e)

        self.reconciler.refresh_account_metadata(db, account)
        try:
            self.jobs.complete(db, job, synced)
        except JobAlreadyClosedError as e:
            MetricsCollector.record_sync_job(provider, SyncJobStatus.FAILED, time.monotonic() - started)
            self.logger.error(f"Sync for {account.email} finished after its job was closed: {e}")
            return SyncResult(
                error=job.error_message or str(e),
                synced=synced,
                job_id=str(job.id),
            )

        MetricsCollector.record_sync_job(provider, SyncJobStatus.COMPLETED, time.monotonic() - started)
        MetricsCollector.increment_messages_synced(provider, synced)
        self.logger.info(
            f"Sync completed for {account.email}: {synced} messages, more available: {bool(next_token)}"
        )
        return SyncResult(
            success=True,
            synced=synced,
            has_more=bool(next_token),
            next_page_token=next_token,
            job_id=str(job.id),
        )

    def _abort(self, db, account, job, provider, started, error, auth=False) -> SyncResult:
        db.rollback()
        message = str(error) or error.__class__.__name__
        self.jobs.fail(db, job, message)
        MetricsCollector.record_sync_job(provider, SyncJobStatus.FAILED, time.monotonic() - started)

        if isinstance(error, AuthExpiredError):
            self.tokens.deactivate_account(db, account, message)
        return SyncResult(error=RECONNECT_REQUIRED if auth else message, auth_error=auth, job_id=str(job.id))

    def _page_through(
        self,
        db: Session,
        account: EmailAccount,
        connector: BaseEmailConnector,
        access_token: str,
        job: SyncJob,
        max_messages: int,
        page_token: Optional[str],
    ) -> Tuple[int, Optional[str]]:
        fetched = 0
        synced = 0
        token = page_token
        interval = settings.sync_checkpoint_interval
        checkpoints = {"last": 0}

        def on_progress(batch_count: int):
            total = synced + batch_count
            if total // interval > checkpoints["last"] // interval:
                checkpoints["last"] = total
                self.jobs.checkpoint(db, job, total)

        while fetched < max_messages:
            remaining = seconds_until(job.timeout_at)
            if remaining is not None and remaining <= 0:
                raise SyncTimeoutError(f"Sync timeout: exceeded {settings.sync_timeout_seconds} seconds")

            page_size = min(settings.sync_page_size, max_messages - fetched)
            page = connector.fetch_messages_page(
                access_token, page_token=token, page_size=page_size, deadline=job.timeout_at
            )
            if page.requested == 0:
                token = None
                break

            fetched += page.requested
            result = self.reconciler.upsert_batch(db, account.id, page.messages, on_progress=on_progress)
            synced += result.processed
            self.logger.info(
                f"{account.email}: page of {page.requested} ({result.created} new, "
                f"{result.updated} updated, {result.skipped} skipped); total {synced}"
            )

            token = page.next_page_token
            if not token:
                break

        return synced, token

    def select_due_accounts(self, db: Session, limit: Optional[int] = None,
                            stale_minutes: Optional[int] = None) -> List[EmailAccount]:
        """Active accounts not synced recently and with no job in flight, stalest first."""
        limit = limit or settings.background_sync_limit
        cutoff = utc_now() - timedelta(minutes=stale_minutes or settings.background_sync_stale_minutes)

        busy = select(SyncJob.account_id).where(SyncJob.status == SyncJobStatus.PROCESSING)
        return (
            db.query(EmailAccount)
            .filter(
                EmailAccount.is_active.is_(True),
                (EmailAccount.last_synced_at.is_(None)) | (EmailAccount.last_synced_at < cutoff),
                EmailAccount.id.not_in(busy),
            )
            .order_by(EmailAccount.last_synced_at.asc().nulls_first())
            .limit(limit)
            .all()
        )


# Global instance
email_sync_service = EmailSyncService()
