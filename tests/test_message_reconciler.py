"""Tests for idempotent message upserts and account bookkeeping."""

from unittest.mock import MagicMock, patch

import pytest
from sqlalchemy.exc import OperationalError

from mailsync.db.models import CachedMessage
from mailsync.services.message_reconciler import MessageReconciler


class TestMessageReconciler:

    @pytest.fixture
    def reconciler(self):
        return MessageReconciler()

    def test_upsert_batch_is_idempotent(self, db, reconciler, make_account, make_messages):
        account = make_account()
        messages = make_messages(5)

        first = reconciler.upsert_batch(db, account.id, messages)
        second = reconciler.upsert_batch(db, account.id, messages)

        assert (first.created, first.updated) == (5, 0)
        assert (second.created, second.updated) == (0, 5)
        assert db.query(CachedMessage).count() == 5

    def test_upsert_overwrites_provider_fields(self, db, reconciler, make_account, make_messages):
        account = make_account()
        reconciler.upsert_batch(db, account.id, make_messages(1, is_read=False))
        reconciler.upsert_batch(db, account.id, make_messages(1, is_read=True, is_starred=True))

        cached = db.query(CachedMessage).one()
        assert cached.is_read is True
        assert cached.is_starred is True

    def test_same_id_under_two_accounts(self, db, reconciler, make_account, make_messages):
        first = make_account(email="a@example.com")
        second = make_account(email="b@example.com")

        reconciler.upsert_batch(db, first.id, make_messages(2))
        reconciler.upsert_batch(db, second.id, make_messages(2))

        assert db.query(CachedMessage).count() == 4

    def test_progress_callback_receives_running_count(self, db, reconciler, make_account, make_messages):
        account = make_account()
        on_progress = MagicMock()

        reconciler.upsert_batch(db, account.id, make_messages(3), on_progress=on_progress)

        assert [c.args[0] for c in on_progress.call_args_list] == [1, 2, 3]

    def test_failed_write_is_skipped_and_rest_of_batch_lands(self, db, reconciler, make_account, make_messages):
        account = make_account()
        upsert = reconciler.upsert

        def flaky(db, account_id, message):
            if message.provider_message_id == "msg-2":
                raise OperationalError("INSERT INTO cached_messages", {}, Exception("disk I/O error"))
            return upsert(db, account_id, message)

        with patch.object(reconciler, "upsert", side_effect=flaky):
            result = reconciler.upsert_batch(db, account.id, make_messages(5))

        assert result.skipped == 1
        assert result.created == 4
        assert result.processed == 4
        stored = sorted(m.provider_message_id for m in db.query(CachedMessage).all())
        assert stored == ["msg-0", "msg-1", "msg-3", "msg-4"]

    def test_refresh_account_metadata(self, db, reconciler, make_account, make_messages):
        account = make_account()
        reconciler.upsert_batch(db, account.id, make_messages(2, is_read=False))
        reconciler.upsert_batch(db, account.id, make_messages(3, start=2, is_read=True))

        assert reconciler.refresh_account_metadata(db, account) == 2
        assert account.unread_count == 2
        assert account.last_synced_at is not None

    def test_mark_read_and_remove(self, db, reconciler, make_account, make_messages):
        account = make_account()
        reconciler.upsert_batch(db, account.id, make_messages(3, is_read=False))

        assert reconciler.mark_read(db, account.id, ["msg-0", "msg-1"]) == 2
        assert reconciler.remove(db, account.id, ["msg-2"]) == 1
        assert reconciler.refresh_unread_count(db, account) == 0
        assert db.query(CachedMessage).count() == 2
