"""
Email Synchronization API Routes

On-demand sync, operational status, and manual triggers for the scheduled
maintenance jobs (stuck-job cleanup, webhook queue, watch renewal).
"""

from typing import Optional

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy.orm import Session

from mailsync.api.dependencies import get_db_session, verify_api_key
from mailsync.services.email_sync_service import email_sync_service
from mailsync.services.sync_job_manager import sync_job_manager
from mailsync.services.sync_status_service import sync_status_service
from mailsync.services.watch_service import watch_service
from mailsync.services.webhook_queue_processor import webhook_queue_processor
from mailsync.utils.logging import get_logger

logger = get_logger("email_sync_api")
router = APIRouter(dependencies=[Depends(verify_api_key)])


class SyncRequest(BaseModel):
    """Request for an on-demand account sync."""
    model_config = ConfigDict(populate_by_name=True)

    account_id: str = Field(..., alias="accountId", description="Account UUID")
    max_messages: Optional[int] = Field(None, alias="maxMessages", gt=0, description="Upper bound for this run")
    page_token: Optional[str] = Field(None, alias="pageToken", description="Resume token from a previous run")


class WatchSetupRequest(BaseModel):
    provider: Optional[str] = Field(None, description="Limit setup to gmail or outlook")


@router.post("/sync")
def sync_account(request: SyncRequest, db: Session = Depends(get_db_session)):
    """
    Run a full sync for one account and report what happened.

    Returns 200 on success, 401 when the account needs reconnecting, 404 for
    an unknown account, 409 when a sync is already running and 502 otherwise.
    """
    result = email_sync_service.sync_account(
        db, request.account_id, max_messages=request.max_messages, page_token=request.page_token
    )
    body = result.to_response()

    if result.success:
        return body
    if result.auth_error:
        status_code = 401
    elif result.already_syncing:
        status_code = 409
    elif result.error == "Account not found":
        status_code = 404
    else:
        status_code = 502
    logger.warning(f"Sync request for {request.account_id} failed ({status_code}): {result.error}")
    return JSONResponse(status_code=status_code, content=body)


@router.post("/sync/cleanup-stuck-jobs")
def cleanup_stuck_jobs(db: Session = Depends(get_db_session)):
    cleaned = sync_job_manager.cleanup_stuck_jobs(db)
    return {"success": True, "cleaned_up": cleaned}


@router.get("/sync/status")
def get_sync_status(db: Session = Depends(get_db_session)):
    return sync_status_service.get_metrics(db)


@router.post("/webhooks/process")
def process_webhook_queue(db: Session = Depends(get_db_session)):
    """Drain one batch of the webhook queue now instead of waiting for the scheduler."""
    stats = webhook_queue_processor.process_batch(db)
    return {"success": True, **stats}


@router.post("/watches/renew")
def renew_watches(db: Session = Depends(get_db_session)):
    stats = watch_service.renew_expiring(db)
    return {"success": True, **stats}


@router.post("/watches/setup")
def setup_watches(request: Optional[WatchSetupRequest] = None, db: Session = Depends(get_db_session)):
    provider = request.provider if request else None
    return watch_service.setup_all(db, provider=provider)
