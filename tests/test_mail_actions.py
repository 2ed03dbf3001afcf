"""Tests for outbound mail actions and their cache mirroring."""

from unittest.mock import MagicMock

import pytest
from fastapi.testclient import TestClient

from mailsync.api.dependencies import get_db_session
from mailsync.db.models import CachedMessage
from mailsync.main import app
from mailsync.services.email_connectors import AuthExpiredError, ProviderAuthError, ProviderError
from mailsync.services.mail_actions_service import ActionError, DELETE, MARK_READ, MailActionsService


class TestMailActionsService:

    @pytest.fixture
    def connector(self):
        connector = MagicMock()
        connector.send_message.return_value = "sent-1"
        return connector

    @pytest.fixture
    def tokens(self):
        tokens = MagicMock()
        tokens.get_valid_access_token.return_value = "access"
        return tokens

    @pytest.fixture
    def service(self, connector, tokens):
        factory = MagicMock()
        factory.for_account.return_value = connector
        return MailActionsService(tokens=tokens, factory=factory)

    @pytest.fixture
    def cached_account(self, db, make_account, make_messages, service):
        account = make_account()
        service.reconciler.upsert_batch(db, account.id, make_messages(3, is_read=False))
        return account

    def test_send(self, db, service, connector, make_account):
        account = make_account()

        result = service.send(db, account.id, ["bob@example.com"], "Hi", "Hello", cc=["carol@example.com"])

        assert result == {"success": True, "messageId": "sent-1"}
        connector.send_message.assert_called_once_with("access", ["bob@example.com"], "Hi", "Hello",
                                                       cc=["carol@example.com"])

    def test_send_requires_recipient(self, db, service, make_account):
        with pytest.raises(ActionError) as exc_info:
            service.send(db, make_account().id, [], "Hi", "Hello")
        assert exc_info.value.status_code == 400

    def test_unknown_account(self, db, service):
        with pytest.raises(ActionError) as exc_info:
            service.reply(db, "00000000-0000-0000-0000-000000000000", "m1", "thanks")
        assert exc_info.value.status_code == 404

    def test_revoked_token_deactivates(self, db, service, tokens, make_account):
        account = make_account()
        tokens.get_valid_access_token.side_effect = AuthExpiredError("invalid_grant")

        with pytest.raises(ActionError) as exc_info:
            service.forward(db, account.id, "m1", ["x@example.com"])
        assert exc_info.value.auth_error is True
        assert exc_info.value.status_code == 401
        tokens.deactivate_account.assert_called_once()

    def test_mark_read_mirrors_cache(self, db, service, connector, cached_account):
        result = service.apply_action(db, cached_account.id, ["msg-0", "msg-1"], MARK_READ)

        assert result.to_response() == {"success": True, "processed": 2, "failed": 0, "errors": []}
        assert connector.mark_read.call_count == 2
        assert cached_account.unread_count == 1

    def test_delete_counts_per_message_failures(self, db, service, connector, cached_account):
        connector.delete_message.side_effect = [None, ProviderError("not found", status_code=404)]

        result = service.apply_action(db, cached_account.id, ["msg-0", "msg-1"], DELETE)

        assert result.success is False
        assert result.processed == 1
        assert result.failed == 1
        assert result.errors[0]["messageId"] == "msg-1"
        remaining = {m.provider_message_id for m in db.query(CachedMessage).all()}
        assert remaining == {"msg-1", "msg-2"}

    def test_auth_failure_mid_run_keeps_completed_work(self, db, service, connector, cached_account):
        connector.mark_read.side_effect = [None, ProviderAuthError("unauthorized", status_code=401)]

        with pytest.raises(ActionError) as exc_info:
            service.apply_action(db, cached_account.id, ["msg-0", "msg-1", "msg-2"], MARK_READ)

        assert exc_info.value.status_code == 401
        read = {m.provider_message_id for m in db.query(CachedMessage).filter_by(is_read=True)}
        assert read == {"msg-0"}

    def test_unsupported_action(self, db, service, cached_account):
        with pytest.raises(ActionError):
            service.apply_action(db, cached_account.id, ["msg-0"], "archive")


class TestMailActionEndpoints:

    @pytest.fixture
    def client(self, db):
        def override():
            yield db

        app.dependency_overrides[get_db_session] = override
        yield TestClient(app)
        app.dependency_overrides.clear()

    def test_unknown_account_is_404(self, client):
        response = client.post("/api/v1/messages/actions", json={
            "accountId": "00000000-0000-0000-0000-000000000000",
            "messageIds": ["m1"],
            "action": "markRead",
        })

        assert response.status_code == 404
        assert response.json()["success"] is False

    def test_inactive_account_is_401(self, client, make_account):
        account = make_account(is_active=False)

        response = client.post("/api/v1/messages/send", json={
            "accountId": str(account.id),
            "to": ["bob@example.com"],
            "subject": "Hi",
            "body": "Hello",
        })

        assert response.status_code == 401
        assert response.json()["authError"] is True
