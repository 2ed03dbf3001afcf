"""Tests for push registration setup and renewal."""

from datetime import timedelta
from unittest.mock import MagicMock

import pytest

from mailsync.db.models import WatchRegistration
from mailsync.services.email_connectors import AuthExpiredError, ProviderError, TransientProviderError, WatchInfo
from mailsync.services.watch_service import WatchService
from mailsync.utils.datetime_utils import to_utc, utc_now


class TestWatchService:

    @pytest.fixture
    def connector(self):
        return MagicMock()

    @pytest.fixture
    def tokens(self):
        tokens = MagicMock()
        tokens.get_valid_access_token.return_value = "access"
        return tokens

    @pytest.fixture
    def service(self, connector, tokens):
        factory = MagicMock()
        factory.for_account.return_value = connector
        factory.get_connector.return_value = connector
        return WatchService(tokens=tokens, factory=factory)

    def test_setup_watch_creates_registration(self, db, service, connector, make_account):
        account = make_account()
        expiration = utc_now() + timedelta(days=7)
        connector.create_watch.return_value = WatchInfo(expiration=expiration, history_id="900")

        result = service.setup_watch(db, account)

        watch = db.query(WatchRegistration).one()
        assert result["success"] is True
        assert watch.history_id == "900"
        assert watch.is_active is True
        assert watch.provider == "gmail"

    def test_setup_all_filters_by_provider(self, db, service, connector, make_account):
        make_account(email="g@example.com")
        make_account(email="o@contoso.com", provider="outlook")
        connector.create_watch.return_value = WatchInfo(expiration=utc_now(), subscription_id="sub-9")

        summary = service.setup_all(db, provider="outlook")

        assert summary["total"] == 1
        assert summary["created"] == 1
        assert db.query(WatchRegistration).one().subscription_id == "sub-9"

    def test_renew_expiring_only_touches_due_registrations(self, db, service, connector, make_account,
                                                           make_watch):
        due = make_watch(make_account(email="due@example.com"), history_id="10", expires_in=timedelta(hours=2))
        later = make_watch(make_account(email="later@example.com"), expires_in=timedelta(days=5))
        new_expiry = utc_now() + timedelta(days=7)
        connector.renew_watch.return_value = WatchInfo(expiration=new_expiry, history_id="99")

        stats = service.renew_expiring(db)

        assert stats == {"renewed": 1, "failed": 0, "total": 1}
        db.refresh(due)
        assert to_utc(due.expiration) == new_expiry
        # An existing cursor is kept so unprocessed history is not skipped
        assert due.history_id == "10"
        assert to_utc(later.expiration) < to_utc(due.expiration)

    def test_renew_failure_is_retried_next_run(self, db, service, connector, make_account, make_watch):
        watch = make_watch(make_account(), expires_in=timedelta(hours=1))
        connector.renew_watch.side_effect = TransientProviderError("503")

        assert service.renew_expiring(db) == {"renewed": 0, "failed": 1, "total": 1}
        db.refresh(watch)
        assert watch.is_active is True

    def test_renew_with_revoked_token_deactivates_account(self, db, service, tokens, make_account, make_watch):
        account = make_account()
        make_watch(account, expires_in=timedelta(hours=1))
        tokens.get_valid_access_token.side_effect = AuthExpiredError("invalid_grant")

        assert service.renew_expiring(db)["failed"] == 1
        tokens.deactivate_account.assert_called_once()

    def test_inactive_account_registration_is_deactivated(self, db, service, connector, make_account, make_watch):
        watch = make_watch(make_account(is_active=False), expires_in=timedelta(hours=1))

        service.renew_expiring(db)

        db.refresh(watch)
        assert watch.is_active is False
        connector.renew_watch.assert_not_called()

    def test_missing_outlook_subscription_is_recreated(self, db, service, connector, make_account, make_watch):
        account = make_account(email="me@contoso.com", provider="outlook")
        watch = make_watch(account, subscription_id="gone", expires_in=timedelta(hours=1))
        connector.renew_watch.side_effect = ProviderError("not found", status_code=404)
        connector.create_watch.return_value = WatchInfo(expiration=utc_now() + timedelta(days=3),
                                                        subscription_id="replacement")

        assert service.renew(db, watch) is True
        assert watch.subscription_id == "replacement"
