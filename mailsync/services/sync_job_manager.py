"""
Sync Job Manager

Owns the sync job lifecycle: ``pending -> processing -> completed | failed``.
The one-processing-job-per-account rule is a partial unique index on
``sync_jobs``; a losing insert surfaces here as ``SyncAlreadyRunningError``.
"""

from datetime import timedelta
from typing import Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from mailsync.config import settings
from mailsync.db.models import SyncJob, SyncJobStatus
from mailsync.utils.datetime_utils import utc_now
from mailsync.utils.logging import get_logger

STUCK_JOB_ERROR = "Job timeout: exceeded maximum processing time"

ALLOWED_TRANSITIONS = {
    SyncJobStatus.PENDING: (SyncJobStatus.PROCESSING, SyncJobStatus.FAILED),
    SyncJobStatus.PROCESSING: (SyncJobStatus.COMPLETED, SyncJobStatus.FAILED),
}


class SyncAlreadyRunningError(Exception):
    """Another job for the account is already processing."""

    def __init__(self, account_id, job_id=None):
        super().__init__(f"Account {account_id} is already syncing")
        self.account_id = account_id
        self.job_id = job_id


class InvalidTransitionError(Exception):
    """Attempted a non-monotonic job status change."""
    pass


class JobAlreadyClosedError(InvalidTransitionError):
    """The job reached a terminal status elsewhere before this worker could complete it."""

    def __init__(self, job: SyncJob):
        super().__init__(f"Sync job {job.id} is already {job.status}")
        self.job = job


class SyncJobManager:

    def __init__(self):
        self.logger = get_logger("sync_job_manager")

    def get_processing_job(self, db: Session, account_id) -> Optional[SyncJob]:
        return (
            db.query(SyncJob)
            .filter(SyncJob.account_id == account_id, SyncJob.status == SyncJobStatus.PROCESSING)
            .first()
        )

    def open_job(self, db: Session, account_id, sync_type: str = "full") -> SyncJob:
        """
        Insert a processing job for the account.

        Raises:
            SyncAlreadyRunningError: a processing job already exists
        """
        existing = self.get_processing_job(db, account_id)
        if existing:
            raise SyncAlreadyRunningError(account_id, existing.id)

        now = utc_now()
        job = SyncJob(
            account_id=account_id,
            status=SyncJobStatus.PROCESSING,
            sync_type=sync_type,
            started_at=now,
            timeout_at=now + timedelta(seconds=settings.sync_timeout_seconds),
            messages_synced=0,
            created_at=now,
            updated_at=now,
        )
        db.add(job)
        try:
            db.commit()
        except IntegrityError:
            db.rollback()
            self.logger.info(f"Concurrent sync detected for account {account_id}")
            raise SyncAlreadyRunningError(account_id)

        self.logger.info(f"Opened {sync_type} sync job {job.id} for account {account_id}")
        return job

    def _transition(self, job: SyncJob, new_status: str):
        allowed = ALLOWED_TRANSITIONS.get(job.status, ())
        if new_status not in allowed:
            raise InvalidTransitionError(f"Sync job {job.id} cannot move from {job.status} to {new_status}")
        job.status = new_status
        job.updated_at = utc_now()

    def checkpoint(self, db: Session, job: SyncJob, messages_synced: int):
        job.messages_synced = messages_synced
        job.updated_at = utc_now()
        db.commit()
        self.logger.debug(f"Sync job {job.id} progress: {messages_synced} messages")

    def complete(self, db: Session, job: SyncJob, messages_synced: int) -> SyncJob:
        """
        Close a processing job as completed.

        The status check and the write are one conditional UPDATE, so a job the
        stuck-job sweep has already failed stays failed.

        Raises:
            JobAlreadyClosedError: the stored row is no longer processing
        """
        now = utc_now()
        updated = (
            db.query(SyncJob)
            .filter(SyncJob.id == job.id, SyncJob.status == SyncJobStatus.PROCESSING)
            .update(
                {
                    SyncJob.status: SyncJobStatus.COMPLETED,
                    SyncJob.messages_synced: messages_synced,
                    SyncJob.completed_at: now,
                    SyncJob.updated_at: now,
                },
                synchronize_session=False,
            )
        )
        db.commit()
        db.refresh(job)
        if not updated:
            self.logger.warning(f"Sync job {job.id} already {job.status}; not marking completed")
            raise JobAlreadyClosedError(job)

        self.logger.info(f"Sync job {job.id} completed with {messages_synced} messages")
        return job

    def fail(self, db: Session, job: SyncJob, error: str, messages_synced: Optional[int] = None) -> SyncJob:
        db.refresh(job)
        if job.status in SyncJobStatus.TERMINAL:
            # Already closed, e.g. by the stuck-job sweep
            self.logger.warning(f"Sync job {job.id} already {job.status}; not failing again")
            return job
        self._transition(job, SyncJobStatus.FAILED)
        job.error_message = error
        job.completed_at = utc_now()
        if messages_synced is not None:
            job.messages_synced = messages_synced
        db.commit()
        self.logger.error(f"Sync job {job.id} failed: {error}")
        return job

    def cleanup_stuck_jobs(self, db: Session, stale_after: Optional[timedelta] = None) -> int:
        """
        Force-fail processing jobs whose last update is older than the threshold.

        Returns:
            Number of jobs failed
        """
        stale_after = stale_after or timedelta(minutes=settings.sync_stuck_job_minutes)
        now = utc_now()
        cutoff = now - stale_after

        stuck = (
            db.query(SyncJob)
            .filter(SyncJob.status == SyncJobStatus.PROCESSING, SyncJob.updated_at < cutoff)
            .all()
        )
        for job in stuck:
            job.status = SyncJobStatus.FAILED
            job.error_message = STUCK_JOB_ERROR
            job.completed_at = now
            job.updated_at = now
            self.logger.warning(f"Reclaimed stuck sync job {job.id} for account {job.account_id}")
        db.commit()

        if stuck:
            self.logger.info(f"Cleaned up {len(stuck)} stuck sync jobs")
        return len(stuck)


# Global instance
sync_job_manager = SyncJobManager()
