"""End-to-end tests of the sync orchestration against a stubbed provider."""

from datetime import timedelta
from unittest.mock import MagicMock, patch

import pytest
from sqlalchemy.exc import OperationalError

from mailsync.db.database import sync_session_factory
from mailsync.db.models import CachedMessage, SyncJob, SyncJobStatus, WatchRegistration
from mailsync.services.email_connectors import (
    ChangeSet,
    CursorExpiredError,
    MessagePage,
    ProviderAuthError,
    TransientProviderError,
    UnsupportedProviderError,
)
from mailsync.services.email_sync_service import EmailSyncService
from mailsync.services.sync_job_manager import STUCK_JOB_ERROR, SyncJobManager
from mailsync.services.token_store import TokenStore
from mailsync.utils.datetime_utils import utc_now


class TestEmailSyncService:

    @pytest.fixture
    def connector(self):
        connector = MagicMock()
        connector.provider = "gmail"
        return connector

    @pytest.fixture
    def factory(self, connector):
        factory = MagicMock()
        factory.for_account.return_value = connector
        return factory

    @pytest.fixture
    def service(self, http_session, sleep, factory):
        return EmailSyncService(tokens=TokenStore(session=http_session, sleep=sleep), jobs=SyncJobManager(), factory=factory)

    def test_full_sync_three_pages(self, db, service, connector, make_account, make_messages):
        account = make_account()
        connector.fetch_messages_page.side_effect = [
            MessagePage(make_messages(50, start=0), next_page_token="p2", is_full_page=True, requested=50),
            MessagePage(make_messages(50, start=50), next_page_token="p3", is_full_page=True, requested=50),
            MessagePage(make_messages(20, start=100), next_page_token=None, requested=20),
        ]

        result = service.sync_account(db, account.id)

        assert result.success is True
        assert result.synced == 120
        assert result.has_more is False
        assert db.query(CachedMessage).filter_by(account_id=account.id).count() == 120

        job = db.query(SyncJob).one()
        assert job.status == SyncJobStatus.COMPLETED
        assert job.messages_synced == 120
        assert account.last_synced_at is not None
        assert account.unread_count == 120

        tokens = [c.kwargs["page_token"] for c in connector.fetch_messages_page.call_args_list]
        assert tokens == [None, "p2", "p3"]

    def test_max_messages_bounds_page_size_and_reports_more(self, db, service, connector, make_account,
                                                            make_messages):
        account = make_account()
        connector.fetch_messages_page.side_effect = [
            MessagePage(make_messages(100), next_page_token="p2", is_full_page=True, requested=100),
            MessagePage(make_messages(20, start=100), next_page_token="p3", is_full_page=True, requested=20),
        ]

        result = service.sync_account(db, account.id, max_messages=120)

        sizes = [c.kwargs["page_size"] for c in connector.fetch_messages_page.call_args_list]
        assert sizes == [100, 20]
        assert result.has_more is True
        assert result.next_page_token == "p3"
        assert result.to_response()["nextPageToken"] == "p3"

    def test_provider_deadline_is_job_timeout(self, db, service, connector, make_account):
        account = make_account()
        connector.fetch_messages_page.return_value = MessagePage([], requested=0)

        service.sync_account(db, account.id)

        job = db.query(SyncJob).one()
        assert connector.fetch_messages_page.call_args.kwargs["deadline"] == job.timeout_at

    def test_revoked_refresh_token_creates_no_job(self, db, service, http_session, connector, make_account,
                                                  make_watch, make_response):
        account = make_account(token_expires_in=-60)
        watch = make_watch(account, history_id="10")
        http_session.post.return_value = make_response(400, {
            "error": "invalid_grant",
            "error_description": "Token has been expired or revoked.",
        })

        result = service.sync_account(db, account.id)

        db.refresh(watch)
        assert result.success is False
        assert result.auth_error is True
        assert account.is_active is False
        assert watch.is_active is False
        assert db.query(SyncJob).count() == 0
        connector.fetch_messages_page.assert_not_called()

    def test_already_syncing(self, db, service, connector, make_account):
        account = make_account()
        running = SyncJobManager().open_job(db, account.id)

        result = service.sync_account(db, account.id)

        assert result.already_syncing is True
        assert result.job_id == str(running.id)
        assert result.to_response()["alreadySyncing"] is True
        connector.fetch_messages_page.assert_not_called()

    def test_provider_failure_fails_job(self, db, service, connector, make_account):
        account = make_account()
        connector.fetch_messages_page.side_effect = TransientProviderError("GET /messages failed after 3 attempts")

        result = service.sync_account(db, account.id)

        job = db.query(SyncJob).one()
        assert result.success is False
        assert job.status == SyncJobStatus.FAILED
        assert "3 attempts" in job.error_message
        assert account.is_active is True

    def test_rate_limited_first_page_waits_then_completes(self, db, service, factory, gmail_connector, http_session,
                                                          sleep, make_account, make_response):
        account = make_account()
        factory.for_account.return_value = gmail_connector
        list_calls = []

        def route(method, url, **kwargs):
            if url.endswith("/users/me/messages"):
                list_calls.append(kwargs.get("params"))
                if len(list_calls) == 1:
                    return make_response(429, {"error": "rateLimitExceeded"}, headers={"Retry-After": "2"})
                return make_response(200, {"messages": [{"id": "m1"}, {"id": "m2"}]})
            return make_response(200, {
                "id": url.rsplit("/", 1)[-1],
                "threadId": "t1",
                "labelIds": ["INBOX"],
                "snippet": "hello",
                "internalDate": "1700000000000",
                "payload": {"mimeType": "text/plain", "headers": [{"name": "Subject", "value": "Hi"}]},
            })

        http_session.request.side_effect = route

        result = service.sync_account(db, account.id, max_messages=10)

        sleep.assert_called_once_with(2.0)
        assert len(list_calls) == 2
        assert result.success is True
        assert result.synced == 2
        job = db.query(SyncJob).one()
        assert job.status == SyncJobStatus.COMPLETED
        assert job.messages_synced == 2

    def test_unwritable_message_is_skipped_and_job_completes(self, db, service, connector, make_account,
                                                             make_messages):
        account = make_account()
        connector.fetch_messages_page.return_value = MessagePage(make_messages(4), next_page_token=None, requested=4)
        upsert = service.reconciler.upsert

        def flaky(db, account_id, message):
            if message.provider_message_id == "msg-1":
                raise OperationalError("INSERT INTO cached_messages", {}, Exception("database is locked"))
            return upsert(db, account_id, message)

        with patch.object(service.reconciler, "upsert", side_effect=flaky):
            result = service.sync_account(db, account.id)

        assert result.success is True
        assert result.synced == 3
        stored = sorted(m.provider_message_id for m in db.query(CachedMessage).all())
        assert stored == ["msg-0", "msg-2", "msg-3"]
        job = db.query(SyncJob).one()
        assert job.status == SyncJobStatus.COMPLETED
        assert job.messages_synced == 3

    def test_job_failed_by_sweep_mid_sync_stays_failed(self, db, service, connector, make_account, make_messages):
        account = make_account()

        def page_then_sweep(access_token, page_token=None, page_size=100, deadline=None):
            sweeper = sync_session_factory()
            try:
                SyncJobManager().cleanup_stuck_jobs(sweeper, stale_after=timedelta(seconds=-1))
            finally:
                sweeper.close()
            return MessagePage(make_messages(3), next_page_token=None, requested=3)

        connector.fetch_messages_page.side_effect = page_then_sweep

        result = service.sync_account(db, account.id)

        assert result.success is False
        assert result.error == STUCK_JOB_ERROR
        assert result.synced == 3
        job = db.query(SyncJob).one()
        assert job.status == SyncJobStatus.FAILED
        assert job.error_message == STUCK_JOB_ERROR

    def test_api_401_reports_auth_error_without_deactivating(self, db, service, connector, make_account):
        account = make_account()
        connector.fetch_messages_page.side_effect = ProviderAuthError("GET /messages unauthorized", status_code=401)

        result = service.sync_account(db, account.id)

        assert result.auth_error is True
        assert db.query(SyncJob).one().status == SyncJobStatus.FAILED
        assert account.is_active is True

    def test_expired_job_deadline_fails_job(self, db, service, connector, make_account, make_messages,
                                            monkeypatch):
        from mailsync.config import settings
        monkeypatch.setattr(settings, "sync_timeout_seconds", 0)
        account = make_account()

        result = service.sync_account(db, account.id)

        assert result.success is False
        assert "timeout" in result.error.lower()
        assert db.query(SyncJob).one().status == SyncJobStatus.FAILED
        connector.fetch_messages_page.assert_not_called()

    def test_unknown_and_inactive_accounts(self, db, service, make_account):
        assert service.sync_account(db, "not-a-uuid").error == "Account not found"

        inactive = make_account(is_active=False)
        result = service.sync_account(db, inactive.id)
        assert result.auth_error is True
        assert db.query(SyncJob).count() == 0

    def test_unsupported_provider(self, db, service, factory, make_account):
        account = make_account(provider="imap")
        factory.for_account.side_effect = UnsupportedProviderError("Unsupported provider: imap")

        result = service.sync_account(db, account.id)

        assert result.success is False
        assert "imap" in result.error

    def test_incremental_advances_cursor_and_applies_deletes(self, db, service, connector, make_account,
                                                             make_watch, make_messages):
        account = make_account()
        watch = make_watch(account, history_id="100")
        service.reconciler.upsert_batch(db, account.id, make_messages(1, prefix="old"))
        connector.fetch_changes.return_value = ChangeSet(
            messages=make_messages(2, prefix="new"), new_cursor="180", deleted_ids=["old-0"]
        )

        result = service.sync_incremental(db, account.id, history_id="175")

        assert result.success is True
        assert result.synced == 2
        assert connector.fetch_changes.call_args.args[1] == "100"
        ids = {m.provider_message_id for m in db.query(CachedMessage).all()}
        assert ids == {"new-0", "new-1"}
        db.refresh(watch)
        assert watch.history_id == "180"
        assert db.query(SyncJob).one().sync_type == "incremental"

    def test_incremental_falls_back_to_full_sync_on_expired_cursor(self, db, service, connector, make_account,
                                                                   make_watch, make_messages):
        account = make_account()
        watch = make_watch(account, history_id="1")
        connector.fetch_changes.side_effect = CursorExpiredError("History id 1 expired", status_code=404)
        connector.fetch_messages_page.return_value = MessagePage(make_messages(3), requested=3)

        result = service.sync_incremental(db, account.id, history_id="500")

        assert result.success is True
        assert result.synced == 3
        assert connector.fetch_messages_page.called
        db.refresh(watch)
        assert watch.history_id == "500"

    def test_select_due_accounts(self, db, service, make_account):
        never = make_account(email="never@example.com")
        stale = make_account(email="stale@example.com", last_synced_at=utc_now() - timedelta(hours=1))
        make_account(email="fresh@example.com", last_synced_at=utc_now())
        make_account(email="off@example.com", is_active=False)
        busy = make_account(email="busy@example.com")
        SyncJobManager().open_job(db, busy.id)

        due = service.select_due_accounts(db, limit=10)

        assert [a.email for a in due] == [never.email, stale.email]
