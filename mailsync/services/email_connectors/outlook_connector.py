"""
Outlook Connector

Microsoft Graph connector. List responses already carry the selected message
fields, so a page is a single call; pagination follows ``@odata.nextLink`` and
the page token is its ``$skiptoken``.
"""

from datetime import datetime, timedelta
from typing import List, Dict, Any, Optional, Tuple
from urllib.parse import urlparse, parse_qs

from mailsync.config import settings
from mailsync.utils.datetime_utils import utc_now, parse_iso_datetime
from mailsync.utils.rate_limiter import RateLimiter

from .base_connector import (
    BaseEmailConnector,
    ChangeSet,
    EmailConnectorError,
    MessagePage,
    NormalizedMessage,
    WatchInfo,
)

SELECT_FIELDS = (
    "id,subject,from,toRecipients,ccRecipients,bccRecipients,bodyPreview,body,"
    "receivedDateTime,isRead,categories,hasAttachments,conversationId"
)
NO_SUBJECT = "(No Subject)"
STARRED_CATEGORY = "Starred"
PINNED_CATEGORY = "Pinned"


def skiptoken_from_next_link(next_link: Optional[str]) -> Optional[str]:
    if not next_link:
        return None
    values = parse_qs(urlparse(next_link).query).get("$skiptoken")
    return values[0] if values else None


def _addresses(recipients: Optional[List[Dict[str, Any]]]) -> List[str]:
    result = []
    for recipient in recipients or []:
        address = (recipient.get("emailAddress") or {}).get("address")
        if address:
            result.append(address)
    return result


class OutlookConnector(BaseEmailConnector):
    """Microsoft Graph mail connector."""

    provider = "outlook"

    def __init__(self, *args, base_url: Optional[str] = None, **kwargs):
        super().__init__(*args, **kwargs)
        self.base_url = (base_url or settings.graph_api_base_url).rstrip("/")

    def _default_rate_limiter(self) -> RateLimiter:
        return RateLimiter(settings.outlook_max_concurrent, settings.outlook_min_delay_ms)

    def token_refresh_request(self, refresh_token: str) -> Tuple[str, Dict[str, str]]:
        return settings.microsoft_token_url, {
            "client_id": settings.microsoft_client_id,
            "client_secret": settings.microsoft_client_secret,
            "refresh_token": refresh_token,
            "grant_type": "refresh_token",
            "scope": settings.microsoft_scopes,
        }

    def fetch_messages_page(
        self,
        access_token: str,
        page_token: Optional[str] = None,
        page_size: int = 100,
        deadline: Optional[datetime] = None,
    ) -> MessagePage:
        params = {
            "$top": page_size,
            "$select": SELECT_FIELDS,
            "$orderby": "receivedDateTime desc",
        }
        if page_token:
            params["$skiptoken"] = page_token

        response = self._request("GET", f"{self.base_url}/me/messages", access_token, deadline=deadline, params=params)
        data = self._json(response)
        raw_messages = data.get("value") or []

        messages = []
        for raw in raw_messages:
            try:
                messages.append(self.normalize(raw))
            except (KeyError, TypeError, ValueError) as e:
                self.logger.warning(f"Could not parse Outlook message {raw.get('id')}: {e}")

        return MessagePage(
            messages=messages,
            next_page_token=skiptoken_from_next_link(data.get("@odata.nextLink")),
            is_full_page=len(raw_messages) == page_size,
            requested=len(raw_messages),
        )

    def fetch_changes(
        self,
        access_token: str,
        cursor: Optional[str],
        deadline: Optional[datetime] = None,
    ) -> ChangeSet:
        # Graph notifications carry no mailbox-wide cursor; re-read the newest page
        page = self.fetch_messages_page(access_token, page_size=settings.sync_page_size, deadline=deadline)
        return ChangeSet(messages=page.messages, new_cursor=cursor)

    def normalize(self, raw: Dict[str, Any]) -> NormalizedMessage:
        sender = (raw.get("from") or {}).get("emailAddress") or {}
        body = raw.get("body") or {}
        content_type = (body.get("contentType") or "").lower()
        categories = raw.get("categories") or []
        has_attachments = bool(raw.get("hasAttachments"))

        return NormalizedMessage(
            provider_message_id=raw["id"],
            thread_id=raw.get("conversationId"),
            sender_name=sender.get("name"),
            sender_email=sender.get("address"),
            recipient_emails=(
                _addresses(raw.get("toRecipients"))
                + _addresses(raw.get("ccRecipients"))
                + _addresses(raw.get("bccRecipients"))
            ),
            subject=raw.get("subject") or NO_SUBJECT,
            snippet=raw.get("bodyPreview") or "",
            body_html=body.get("content") if content_type == "html" else None,
            body_text=body.get("content") if content_type != "html" else None,
            received_at=parse_iso_datetime(raw.get("receivedDateTime")),
            is_read=bool(raw.get("isRead")),
            # Category names are user-defined; these two are matched literally
            is_starred=STARRED_CATEGORY in categories,
            is_pinned=PINNED_CATEGORY in categories,
            has_attachments=has_attachments,
            attachment_count=1 if has_attachments else 0,
            labels=list(categories),
        )

    # Outbound actions

    @staticmethod
    def _recipients(addresses: Optional[List[str]]) -> List[Dict[str, Any]]:
        return [{"emailAddress": {"address": address}} for address in addresses or []]

    def send_message(self, access_token: str, to: List[str], subject: str, body: str,
                     cc: Optional[List[str]] = None) -> Optional[str]:
        message = {
            "subject": subject,
            "body": {"contentType": "Text", "content": body},
            "toRecipients": self._recipients(to),
        }
        if cc:
            message["ccRecipients"] = self._recipients(cc)
        # sendMail answers 202 with no body, so there is no id to return
        self._request("POST", f"{self.base_url}/me/sendMail", access_token,
                      json={"message": message, "saveToSentItems": True})
        return None

    def reply(self, access_token: str, message_id: str, body: str) -> Optional[str]:
        self._request("POST", f"{self.base_url}/me/messages/{message_id}/reply", access_token,
                      json={"comment": body})
        return None

    def forward(self, access_token: str, message_id: str, to: List[str],
                comment: Optional[str] = None) -> Optional[str]:
        self._request("POST", f"{self.base_url}/me/messages/{message_id}/forward", access_token,
                      json={"comment": comment or "", "toRecipients": self._recipients(to)})
        return None

    def mark_read(self, access_token: str, message_id: str) -> None:
        self._request("PATCH", f"{self.base_url}/me/messages/{message_id}", access_token,
                      json={"isRead": True})

    def delete_message(self, access_token: str, message_id: str) -> None:
        self._request("DELETE", f"{self.base_url}/me/messages/{message_id}", access_token)

    # Push registrations

    def _subscription_expiry(self) -> datetime:
        return utc_now() + timedelta(hours=settings.outlook_subscription_lifetime_hours)

    @staticmethod
    def _format_expiry(expiry: datetime) -> str:
        return expiry.strftime("%Y-%m-%dT%H:%M:%S.0000000Z")

    def create_watch(self, access_token: str, account_id: Optional[str] = None) -> WatchInfo:
        if not settings.outlook_notification_url:
            raise EmailConnectorError("OUTLOOK_NOTIFICATION_URL is not configured")

        body = {
            "changeType": "created,updated",
            "notificationUrl": settings.outlook_notification_url,
            "resource": "me/mailFolders('Inbox')/messages",
            "expirationDateTime": self._format_expiry(self._subscription_expiry()),
        }
        if settings.outlook_client_state:
            body["clientState"] = settings.outlook_client_state

        data = self._json(self._request("POST", f"{self.base_url}/subscriptions", access_token, json=body))
        return WatchInfo(
            expiration=parse_iso_datetime(data.get("expirationDateTime")),
            subscription_id=data.get("id"),
        )

    def renew_watch(self, access_token: str, subscription_id: Optional[str] = None) -> WatchInfo:
        if not subscription_id:
            raise EmailConnectorError("Outlook renewal requires a subscription id")

        expiry = self._subscription_expiry()
        data = self._json(self._request(
            "PATCH",
            f"{self.base_url}/subscriptions/{subscription_id}",
            access_token,
            json={"expirationDateTime": self._format_expiry(expiry)},
        ))
        return WatchInfo(
            expiration=parse_iso_datetime(data.get("expirationDateTime")) or expiry,
            subscription_id=subscription_id,
        )
