"""Tests for the sync job lifecycle and stuck-job sweep."""

from datetime import timedelta
from unittest.mock import patch

import pytest
from sqlalchemy.exc import IntegrityError

from mailsync.db.database import sync_session_factory
from mailsync.db.models import SyncJob, SyncJobStatus
from mailsync.services.sync_job_manager import (
    STUCK_JOB_ERROR,
    InvalidTransitionError,
    JobAlreadyClosedError,
    SyncAlreadyRunningError,
    SyncJobManager,
)
from mailsync.utils.datetime_utils import to_utc, utc_now


class TestSyncJobManager:

    @pytest.fixture
    def manager(self):
        return SyncJobManager()

    def test_open_job_sets_deadline(self, db, manager, make_account):
        account = make_account()

        job = manager.open_job(db, account.id)

        assert job.status == SyncJobStatus.PROCESSING
        assert job.started_at is not None
        assert to_utc(job.timeout_at) > utc_now()

    def test_second_open_reports_running_job(self, db, manager, make_account):
        account = make_account()
        first = manager.open_job(db, account.id)

        with pytest.raises(SyncAlreadyRunningError) as exc_info:
            manager.open_job(db, account.id)
        assert exc_info.value.job_id == first.id

    def test_partial_unique_index_rejects_second_processing_row(self, db, make_account):
        account = make_account()
        db.add(SyncJob(account_id=account.id, status=SyncJobStatus.PROCESSING))
        db.commit()

        db.add(SyncJob(account_id=account.id, status=SyncJobStatus.PROCESSING))
        with pytest.raises(IntegrityError):
            db.commit()
        db.rollback()

    def test_partial_unique_index_allows_terminal_history(self, db, make_account):
        account = make_account()
        db.add_all([
            SyncJob(account_id=account.id, status=SyncJobStatus.COMPLETED),
            SyncJob(account_id=account.id, status=SyncJobStatus.FAILED),
            SyncJob(account_id=account.id, status=SyncJobStatus.PROCESSING),
        ])
        db.commit()
        assert db.query(SyncJob).count() == 3

    def test_lost_insert_race_surfaces_as_already_running(self, db, manager, make_account):
        account = make_account()
        manager.open_job(db, account.id)

        # Simulate a racer that passed the read check before our job was visible
        with patch.object(manager, "get_processing_job", return_value=None):
            with pytest.raises(SyncAlreadyRunningError):
                manager.open_job(db, account.id)

        assert db.query(SyncJob).filter_by(status=SyncJobStatus.PROCESSING).count() == 1

    def test_complete_and_fail(self, db, manager, make_account):
        account = make_account()
        job = manager.open_job(db, account.id)
        manager.complete(db, job, 42)

        assert job.status == SyncJobStatus.COMPLETED
        assert job.messages_synced == 42
        assert job.completed_at is not None

        other = manager.open_job(db, account.id)
        manager.fail(db, other, "provider exploded")
        assert other.status == SyncJobStatus.FAILED
        assert other.error_message == "provider exploded"

    def test_terminal_jobs_do_not_move(self, db, manager, make_account):
        account = make_account()
        job = manager.open_job(db, account.id)
        manager.complete(db, job, 1)

        with pytest.raises(InvalidTransitionError):
            manager.complete(db, job, 2)

        manager.fail(db, job, "late failure")
        assert job.status == SyncJobStatus.COMPLETED
        assert job.error_message is None

    def test_complete_keeps_job_failed_by_another_session(self, db, manager, make_account):
        account = make_account()
        job = manager.open_job(db, account.id)

        # The stuck-job sweep runs in its own session and fails the row underneath us
        sweeper = sync_session_factory()
        try:
            assert manager.cleanup_stuck_jobs(sweeper, stale_after=timedelta(seconds=-1)) == 1
        finally:
            sweeper.close()

        with pytest.raises(JobAlreadyClosedError):
            manager.complete(db, job, 10)

        reader = sync_session_factory()
        try:
            stored = reader.get(SyncJob, job.id)
            assert stored.status == SyncJobStatus.FAILED
            assert stored.error_message == STUCK_JOB_ERROR
            assert stored.messages_synced == 0
        finally:
            reader.close()
        assert job.status == SyncJobStatus.FAILED

    def test_checkpoint_updates_progress(self, db, manager, make_account):
        account = make_account()
        job = manager.open_job(db, account.id)

        manager.checkpoint(db, job, 50)

        db.refresh(job)
        assert job.messages_synced == 50

    def test_cleanup_stuck_jobs(self, db, manager, make_account):
        stale_account = make_account(email="stale@example.com")
        fresh_account = make_account(email="fresh@example.com")
        stale = manager.open_job(db, stale_account.id)
        fresh = manager.open_job(db, fresh_account.id)
        stale.updated_at = utc_now() - timedelta(minutes=30)
        db.commit()

        assert manager.cleanup_stuck_jobs(db) == 1

        db.refresh(stale)
        db.refresh(fresh)
        assert stale.status == SyncJobStatus.FAILED
        assert stale.error_message == STUCK_JOB_ERROR
        assert fresh.status == SyncJobStatus.PROCESSING

        # The account can sync again once its stuck job is reclaimed
        assert manager.open_job(db, stale_account.id).status == SyncJobStatus.PROCESSING
