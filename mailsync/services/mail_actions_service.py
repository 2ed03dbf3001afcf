"""
Mail Actions Service

Outbound provider actions: send, reply, forward, mark read and delete. Each
call fetches its own valid token; the local cache is only touched after the
provider confirms the change.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from sqlalchemy.orm import Session

from mailsync.db.models import EmailAccount
from mailsync.services.email_connectors import (
    AuthExpiredError,
    BaseEmailConnector,
    EmailConnectorError,
    ProviderAuthError,
    connector_factory,
)
from mailsync.services.email_sync_service import RECONNECT_REQUIRED, as_uuid
from mailsync.services.message_reconciler import message_reconciler
from mailsync.services.token_store import token_store
from mailsync.utils.logging import get_logger

MARK_READ = "markRead"
DELETE = "delete"
ACTIONS = (MARK_READ, DELETE)


class ActionError(Exception):
    """Structured failure for user-facing actions."""

    def __init__(self, message: str, auth_error: bool = False, status_code: int = 400):
        super().__init__(message)
        self.message = message
        self.auth_error = auth_error
        self.status_code = status_code

    def to_response(self) -> Dict[str, Any]:
        return {"success": False, "error": self.message, "authError": self.auth_error}


@dataclass
class ActionResult:
    success: bool = True
    processed: int = 0
    failed: int = 0
    errors: List[Dict[str, str]] = field(default_factory=list)

    def to_response(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "processed": self.processed,
            "failed": self.failed,
            "errors": self.errors,
        }


class MailActionsService:

    def __init__(self, tokens=None, factory=None, reconciler=None):
        self.tokens = tokens or token_store
        self.factory = factory or connector_factory
        self.reconciler = reconciler or message_reconciler
        self.logger = get_logger("mail_actions_service")

    def _prepare(self, db: Session, account_id):
        """Resolve account, connector and token, translating failures into ActionError."""
        account_uuid = as_uuid(account_id)
        account = db.get(EmailAccount, account_uuid) if account_uuid else None
        if not account:
            raise ActionError("Account not found", status_code=404)
        if not account.is_active:
            raise ActionError(RECONNECT_REQUIRED, auth_error=True, status_code=401)

        try:
            connector = self.factory.for_account(account)
            access_token = self.tokens.get_valid_access_token(db, account)
        except AuthExpiredError as e:
            self.tokens.deactivate_account(db, account, str(e))
            raise ActionError(RECONNECT_REQUIRED, auth_error=True, status_code=401)
        except EmailConnectorError as e:
            raise ActionError(f"Could not obtain access token: {e}", status_code=502)
        return account, connector, access_token

    def _provider_call(self, account: EmailAccount, description: str, call):
        try:
            return call()
        except ProviderAuthError as e:
            self.logger.error(f"{description} rejected for {account.email}: {e}")
            raise ActionError(RECONNECT_REQUIRED, auth_error=True, status_code=401)
        except EmailConnectorError as e:
            self.logger.error(f"{description} failed for {account.email}: {e}")
            raise ActionError(str(e), status_code=502)

    def send(self, db: Session, account_id, to: List[str], subject: str, body: str,
             cc: Optional[List[str]] = None) -> Dict[str, Any]:
        """
        Send a new message.

        Returns:
            {"success": True, "messageId": ...}; Outlook's sendMail returns no id

        Raises:
            ActionError: account missing or inactive, auth failure, provider failure
        """
        if not to:
            raise ActionError("At least one recipient is required")
        account, connector, access_token = self._prepare(db, account_id)
        message_id = self._provider_call(
            account, "Send", lambda: connector.send_message(access_token, to, subject, body, cc=cc)
        )
        self.logger.info(f"Sent message from {account.email} to {len(to)} recipients")
        return {"success": True, "messageId": message_id}

    def reply(self, db: Session, account_id, message_id: str, body: str) -> Dict[str, Any]:
        account, connector, access_token = self._prepare(db, account_id)
        sent_id = self._provider_call(account, "Reply", lambda: connector.reply(access_token, message_id, body))
        self.logger.info(f"Replied to {message_id} from {account.email}")
        return {"success": True, "messageId": sent_id}

    def forward(self, db: Session, account_id, message_id: str, to: List[str],
                comment: Optional[str] = None) -> Dict[str, Any]:
        if not to:
            raise ActionError("At least one recipient is required")
        account, connector, access_token = self._prepare(db, account_id)
        sent_id = self._provider_call(
            account, "Forward", lambda: connector.forward(access_token, message_id, to, comment=comment)
        )
        self.logger.info(f"Forwarded {message_id} from {account.email}")
        return {"success": True, "messageId": sent_id}

    def apply_action(self, db: Session, account_id, message_ids: List[str], action: str) -> ActionResult:
        """
        Mark messages read or delete them at the provider, then mirror the
        successful ones into the cache.

        Per-message provider failures are counted rather than raised; an auth
        failure stops the run.
        """
        if action not in ACTIONS:
            raise ActionError(f"Unsupported action: {action}")
        account, connector, access_token = self._prepare(db, account_id)

        result = ActionResult()
        done: List[str] = []
        for message_id in message_ids:
            try:
                self._apply_one(connector, access_token, message_id, action)
            except ProviderAuthError as e:
                self.logger.error(f"{action} rejected for {account.email}: {e}")
                self._mirror(db, account, done, action)
                raise ActionError(RECONNECT_REQUIRED, auth_error=True, status_code=401)
            except EmailConnectorError as e:
                result.failed += 1
                result.errors.append({"messageId": message_id, "error": str(e)})
                self.logger.warning(f"{action} failed for message {message_id}: {e}")
                continue
            done.append(message_id)
            result.processed += 1

        self._mirror(db, account, done, action)
        result.success = result.failed == 0
        self.logger.info(f"{action} on {account.email}: {result.processed} processed, {result.failed} failed")
        return result

    @staticmethod
    def _apply_one(connector: BaseEmailConnector, access_token: str, message_id: str, action: str):
        if action == MARK_READ:
            connector.mark_read(access_token, message_id)
        else:
            connector.delete_message(access_token, message_id)

    def _mirror(self, db: Session, account: EmailAccount, message_ids: List[str], action: str):
        if not message_ids:
            return
        if action == MARK_READ:
            self.reconciler.mark_read(db, account.id, message_ids)
        else:
            self.reconciler.remove(db, account.id, message_ids)
        self.reconciler.refresh_unread_count(db, account)


# Global instance
mail_actions_service = MailActionsService()
