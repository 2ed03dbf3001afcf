"""
Mail Actions API Routes

Send, reply, forward and bulk message actions against the provider.
"""

from typing import List, Optional

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy.orm import Session

from mailsync.api.dependencies import get_db_session, verify_api_key
from mailsync.services.mail_actions_service import ActionError, mail_actions_service

router = APIRouter(prefix="/messages", dependencies=[Depends(verify_api_key)])


class _AliasedModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class SendRequest(_AliasedModel):
    account_id: str = Field(..., alias="accountId")
    to: List[str]
    cc: Optional[List[str]] = None
    subject: str = ""
    body: str = ""


class ReplyRequest(_AliasedModel):
    account_id: str = Field(..., alias="accountId")
    message_id: str = Field(..., alias="messageId")
    body: str


class ForwardRequest(_AliasedModel):
    account_id: str = Field(..., alias="accountId")
    message_id: str = Field(..., alias="messageId")
    to: List[str]
    comment: Optional[str] = None


class ActionRequest(_AliasedModel):
    account_id: str = Field(..., alias="accountId")
    message_ids: List[str] = Field(..., alias="messageIds")
    action: str = Field(..., description="markRead or delete")


def _error_response(error: ActionError) -> JSONResponse:
    return JSONResponse(status_code=error.status_code, content=error.to_response())


@router.post("/send")
def send_message(request: SendRequest, db: Session = Depends(get_db_session)):
    try:
        return mail_actions_service.send(
            db, request.account_id, request.to, request.subject, request.body, cc=request.cc
        )
    except ActionError as e:
        return _error_response(e)


@router.post("/reply")
def reply_to_message(request: ReplyRequest, db: Session = Depends(get_db_session)):
    try:
        return mail_actions_service.reply(db, request.account_id, request.message_id, request.body)
    except ActionError as e:
        return _error_response(e)


@router.post("/forward")
def forward_message(request: ForwardRequest, db: Session = Depends(get_db_session)):
    try:
        return mail_actions_service.forward(
            db, request.account_id, request.message_id, request.to, comment=request.comment
        )
    except ActionError as e:
        return _error_response(e)


@router.post("/actions")
def apply_action(request: ActionRequest, db: Session = Depends(get_db_session)):
    try:
        result = mail_actions_service.apply_action(db, request.account_id, request.message_ids, request.action)
    except ActionError as e:
        return _error_response(e)
    return result.to_response()
