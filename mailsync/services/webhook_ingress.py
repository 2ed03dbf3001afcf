"""
Webhook Ingress

Decodes provider push notifications and parks them in ``webhook_queue``. No
provider call happens on this path; the queue processor does the work later.
Callers always acknowledge the provider, whatever happens here.
"""

import base64
import binascii
import hmac
import json
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

from mailsync.config import settings
from mailsync.db.models import EmailAccount, WatchRegistration, WebhookQueueItem, WebhookStatus
from mailsync.utils.logging import get_logger
from mailsync.utils.metrics import MetricsCollector

logger = get_logger("webhook_ingress")


@dataclass
class IngressResult:
    queued: int = 0
    dropped: int = 0
    reasons: List[str] = field(default_factory=list)

    def drop(self, reason: str):
        self.dropped += 1
        self.reasons.append(reason)
        logger.info(f"Dropping notification: {reason}")


def decode_pubsub_data(envelope: Any) -> Optional[Dict[str, Any]]:
    """
    Extract ``{emailAddress, historyId}`` from a Pub/Sub push envelope.

    Returns None for anything malformed.
    """
    if not isinstance(envelope, dict):
        return None
    message = envelope.get("message")
    if not isinstance(message, dict) or not message.get("data"):
        return None
    try:
        data = str(message["data"]).replace("-", "+").replace("_", "/")
        decoded = base64.b64decode(data + "=" * (-len(data) % 4))
        payload = json.loads(decoded.decode("utf-8"))
    except (binascii.Error, ValueError, UnicodeDecodeError):
        return None
    return payload if isinstance(payload, dict) else None


class WebhookIngress:

    def receive_gmail(self, db: Session, envelope: Any) -> IngressResult:
        result = IngressResult()
        payload = decode_pubsub_data(envelope)
        if payload is None:
            result.drop("malformed Pub/Sub envelope")
            return result

        email_address = payload.get("emailAddress")
        history_id = payload.get("historyId")
        if not email_address or not history_id:
            result.drop("missing emailAddress or historyId")
            return result

        account = (
            db.query(EmailAccount)
            .filter(func.lower(EmailAccount.email) == email_address.lower(), EmailAccount.provider == "gmail")
            .first()
        )
        if not account or not account.is_active:
            result.drop(f"no active Gmail account for {email_address}")
            return result

        watch = db.query(WatchRegistration).filter_by(account_id=account.id).first()
        if watch is not None and not watch.is_active:
            result.drop(f"watch for {email_address} is inactive")
            return result

        self._enqueue(db, account, "gmail", str(history_id), "messageAdded", email_address)
        result.queued = 1
        db.commit()
        return result

    def receive_outlook(self, db: Session, payload: Any) -> IngressResult:
        result = IngressResult()
        notifications = payload.get("value") if isinstance(payload, dict) else None
        if not isinstance(notifications, list):
            result.drop("malformed Graph notification body")
            return result

        for notification in notifications:
            if not isinstance(notification, dict):
                result.drop("notification is not an object")
                continue

            subscription_id = notification.get("subscriptionId")
            if not subscription_id:
                result.drop("notification without subscriptionId")
                continue

            if settings.outlook_client_state and not hmac.compare_digest(
                str(notification.get("clientState") or ""), settings.outlook_client_state
            ):
                result.drop(f"clientState mismatch for subscription {subscription_id}")
                continue

            watch = (
                db.query(WatchRegistration)
                .filter_by(subscription_id=subscription_id, provider="outlook", is_active=True)
                .first()
            )
            account = db.get(EmailAccount, watch.account_id) if watch else None
            if not account or not account.is_active:
                result.drop(f"no active subscription {subscription_id}")
                continue

            resource_id = (notification.get("resourceData") or {}).get("id")
            self._enqueue(db, account, "outlook", resource_id, notification.get("changeType"), account.email)
            result.queued += 1

        db.commit()
        return result

    def _enqueue(self, db: Session, account: EmailAccount, provider: str, history_id: Optional[str],
                 change_type: Optional[str], email_address: str):
        db.add(WebhookQueueItem(
            account_id=account.id,
            email_address=email_address,
            provider=provider,
            history_id=history_id,
            change_type=change_type,
            status=WebhookStatus.PENDING,
            retry_count=0,
        ))
        MetricsCollector.record_webhook_item(provider, "queued")
        logger.info(f"Queued {provider} notification for {email_address} ({change_type}, {history_id})")


# Global instance
webhook_ingress = WebhookIngress()
