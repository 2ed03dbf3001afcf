"""
Provider push endpoints.

These are called by Google Pub/Sub and Microsoft Graph, not by users, so they
carry no API key and always acknowledge: a non-2xx answer only makes the
provider redeliver or disable the subscription. Ingress work is synchronous
SQLAlchemy, so it runs in the threadpool to keep the event loop free.
"""

import json
from typing import Optional

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse, PlainTextResponse
from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool

from mailsync.api.dependencies import get_db_session
from mailsync.services.webhook_ingress import webhook_ingress
from mailsync.utils.logging import get_logger

logger = get_logger("webhooks_api")
router = APIRouter()


async def _read_json(request: Request):
    body = await request.body()
    try:
        return json.loads(body or b"null")
    except (ValueError, UnicodeDecodeError):
        logger.warning(f"Unparseable webhook body ({len(body)} bytes)")
        return None


@router.post("/gmail")
async def gmail_webhook(request: Request, db: Session = Depends(get_db_session)):
    """Pub/Sub push endpoint for Gmail watch notifications."""
    envelope = await _read_json(request)
    try:
        result = await run_in_threadpool(webhook_ingress.receive_gmail, db, envelope)
        return {"success": True, "queued": result.queued}
    except Exception as e:
        await run_in_threadpool(db.rollback)
        logger.error(f"Gmail webhook handling failed: {e}")
        return {"success": True, "queued": 0}


@router.get("/outlook")
def outlook_validation(validationToken: Optional[str] = None):
    """Graph subscription validation handshake."""
    return PlainTextResponse(validationToken or "", status_code=200)


@router.post("/outlook")
async def outlook_webhook(request: Request, db: Session = Depends(get_db_session),
                          validationToken: Optional[str] = None):
    """Graph change notifications; also answers the validation handshake Graph sends by POST."""
    if validationToken is not None:
        return PlainTextResponse(validationToken, status_code=200)

    payload = await _read_json(request)
    try:
        result = await run_in_threadpool(webhook_ingress.receive_outlook, db, payload)
        return JSONResponse(status_code=202, content={"success": True, "queued": result.queued})
    except Exception as e:
        await run_in_threadpool(db.rollback)
        logger.error(f"Outlook webhook handling failed: {e}")
        return JSONResponse(status_code=202, content={"success": True, "queued": 0})
