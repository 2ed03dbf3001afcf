"""
Gmail Connector

Talks to the Gmail REST API. Listing returns only ids, so every page needs a
per-message detail fetch; those run on a small thread pool bounded by the
connector's rate limiter.
"""

import base64
import html
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime
from email.message import EmailMessage
from email.utils import getaddresses, parseaddr
from typing import List, Dict, Any, Optional, Tuple

from mailsync.config import settings
from mailsync.utils.datetime_utils import utc_from_timestamp_ms
from mailsync.utils.rate_limiter import RateLimiter

from .base_connector import (
    BaseEmailConnector,
    ChangeSet,
    CursorExpiredError,
    EmailConnectorError,
    MessagePage,
    NormalizedMessage,
    ProviderAuthError,
    ProviderError,
    SyncTimeoutError,
    WatchInfo,
)

WATCH_LABEL_IDS = ["INBOX", "SENT", "DRAFT", "SPAM", "TRASH"]
NO_SUBJECT = "(No Subject)"


def decode_base64url(data: Optional[str]) -> str:
    """Decode Gmail's unpadded base64url body data."""
    if not data:
        return ""
    padded = data + "=" * (-len(data) % 4)
    return base64.urlsafe_b64decode(padded.encode("ascii")).decode("utf-8", errors="replace")


def extract_bodies(payload: Dict[str, Any]) -> Tuple[Optional[str], Optional[str]]:
    """
    Walk a MIME payload depth-first.

    Returns:
        (html, text) where each is the first part of that type found, or None
    """
    found = {"text/html": None, "text/plain": None}

    def walk(part: Dict[str, Any]):
        mime_type = part.get("mimeType", "")
        data = (part.get("body") or {}).get("data")
        if mime_type in found and found[mime_type] is None and data and not part.get("filename"):
            found[mime_type] = decode_base64url(data)
        for child in part.get("parts") or []:
            walk(child)

    walk(payload or {})
    return found["text/html"], found["text/plain"]


def count_attachments(payload: Dict[str, Any]) -> int:
    count = 0
    for part in (payload or {}).get("parts") or []:
        if part.get("filename") and (part.get("body") or {}).get("attachmentId"):
            count += 1
        count += count_attachments(part)
    return count


class GmailConnector(BaseEmailConnector):
    """Gmail API connector."""

    provider = "gmail"

    def __init__(self, *args, base_url: Optional[str] = None, **kwargs):
        super().__init__(*args, **kwargs)
        self.base_url = (base_url or settings.gmail_api_base_url).rstrip("/")

    def _default_rate_limiter(self) -> RateLimiter:
        return RateLimiter(settings.gmail_max_concurrent, settings.gmail_min_delay_ms)

    def token_refresh_request(self, refresh_token: str) -> Tuple[str, Dict[str, str]]:
        return settings.google_token_url, {
            "client_id": settings.google_client_id,
            "client_secret": settings.google_client_secret,
            "refresh_token": refresh_token,
            "grant_type": "refresh_token",
        }

    # Sync

    def fetch_messages_page(
        self,
        access_token: str,
        page_token: Optional[str] = None,
        page_size: int = 100,
        deadline: Optional[datetime] = None,
    ) -> MessagePage:
        params = {"maxResults": page_size}
        if page_token:
            params["pageToken"] = page_token

        response = self._request(
            "GET", f"{self.base_url}/users/me/messages", access_token, deadline=deadline, params=params
        )
        data = self._json(response)
        ids = [m["id"] for m in data.get("messages") or []]

        messages = self._fetch_details(access_token, ids, deadline)
        self.logger.info(f"Fetched {len(messages)}/{len(ids)} Gmail messages")

        return MessagePage(
            messages=messages,
            next_page_token=data.get("nextPageToken"),
            is_full_page=len(ids) == page_size,
            requested=len(ids),
        )

    def fetch_changes(
        self,
        access_token: str,
        cursor: Optional[str],
        deadline: Optional[datetime] = None,
    ) -> ChangeSet:
        """
        Fetch messages added or deleted since a history id.

        Raises:
            CursorExpiredError: the history id is unknown to Gmail (HTTP 404)
        """
        if not cursor:
            raise CursorExpiredError("No history id stored for incremental sync")

        message_ids: List[str] = []
        deleted: List[str] = []
        seen = set()
        new_cursor = cursor
        page_token = None

        while True:
            params = {"startHistoryId": cursor, "historyTypes": ["messageAdded", "messageDeleted"]}
            if page_token:
                params["pageToken"] = page_token
            try:
                response = self._request(
                    "GET", f"{self.base_url}/users/me/history", access_token, deadline=deadline, params=params
                )
            except ProviderError as e:
                if e.status_code == 404:
                    raise CursorExpiredError(f"History id {cursor} expired", status_code=404)
                raise

            data = self._json(response)
            for record in data.get("history") or []:
                for added in record.get("messagesAdded") or []:
                    message_id = (added.get("message") or {}).get("id")
                    if message_id and message_id not in seen:
                        seen.add(message_id)
                        message_ids.append(message_id)
                for removed in record.get("messagesDeleted") or []:
                    message_id = (removed.get("message") or {}).get("id")
                    if message_id and message_id not in deleted:
                        deleted.append(message_id)

            new_cursor = data.get("historyId") or new_cursor
            page_token = data.get("nextPageToken")
            if not page_token:
                break

        message_ids = [m for m in message_ids if m not in deleted]
        self.logger.info(f"History since {cursor}: {len(message_ids)} added, {len(deleted)} deleted")
        return ChangeSet(
            messages=self._fetch_details(access_token, message_ids, deadline),
            new_cursor=new_cursor,
            deleted_ids=deleted,
        )

    def _fetch_details(self, access_token: str, ids: List[str], deadline: Optional[datetime]) -> List[NormalizedMessage]:
        if not ids:
            return []

        def fetch(message_id: str) -> Optional[NormalizedMessage]:
            try:
                raw = self._get_message(access_token, message_id, deadline)
                return self.normalize(raw)
            except (ProviderAuthError, SyncTimeoutError):
                raise
            except EmailConnectorError as e:
                self.logger.warning(f"Skipping Gmail message {message_id}: {e}")
            except (KeyError, TypeError, ValueError) as e:
                self.logger.warning(f"Could not parse Gmail message {message_id}: {e}")
            return None

        with ThreadPoolExecutor(max_workers=self.rate_limiter.max_concurrent) as pool:
            results = list(pool.map(fetch, ids))
        return [m for m in results if m is not None]

    def _get_message(self, access_token: str, message_id: str, deadline: Optional[datetime] = None,
                     fmt: str = "full") -> Dict[str, Any]:
        response = self._request(
            "GET",
            f"{self.base_url}/users/me/messages/{message_id}",
            access_token,
            deadline=deadline,
            params={"format": fmt},
        )
        return self._json(response)

    def normalize(self, raw: Dict[str, Any]) -> NormalizedMessage:
        payload = raw.get("payload") or {}
        headers = {h["name"].lower(): h.get("value", "") for h in payload.get("headers") or []}

        sender_name, sender_email = parseaddr(headers.get("from", ""))
        recipients = [
            address
            for _, address in getaddresses([headers.get(k, "") for k in ("to", "cc", "bcc") if headers.get(k)])
            if address
        ]

        body_html, body_text = extract_bodies(payload)
        snippet = html.unescape(raw.get("snippet") or "")
        if body_html is None and body_text is None:
            body_text = snippet

        labels = raw.get("labelIds") or []
        attachments = count_attachments(payload)

        return NormalizedMessage(
            provider_message_id=raw["id"],
            thread_id=raw.get("threadId"),
            sender_name=sender_name or None,
            sender_email=sender_email or headers.get("from") or None,
            recipient_emails=recipients,
            subject=headers.get("subject") or NO_SUBJECT,
            snippet=snippet,
            body_html=body_html,
            body_text=body_text,
            received_at=utc_from_timestamp_ms(raw.get("internalDate")),
            is_read="UNREAD" not in labels,
            is_starred="STARRED" in labels,
            is_pinned="PINNED" in labels,
            has_attachments=attachments > 0,
            attachment_count=attachments,
            labels=list(labels),
        )

    # Outbound actions

    def _send_raw(self, access_token: str, mime: EmailMessage, thread_id: Optional[str] = None) -> Optional[str]:
        raw = base64.urlsafe_b64encode(mime.as_bytes()).decode("ascii")
        body = {"raw": raw}
        if thread_id:
            body["threadId"] = thread_id
        response = self._request("POST", f"{self.base_url}/users/me/messages/send", access_token, json=body)
        return self._json(response).get("id")

    def send_message(self, access_token: str, to: List[str], subject: str, body: str,
                     cc: Optional[List[str]] = None) -> Optional[str]:
        mime = EmailMessage()
        mime["To"] = ", ".join(to)
        if cc:
            mime["Cc"] = ", ".join(cc)
        mime["Subject"] = subject
        mime.set_content(body)
        return self._send_raw(access_token, mime)

    def reply(self, access_token: str, message_id: str, body: str) -> Optional[str]:
        original = self._get_message(access_token, message_id, fmt="metadata")
        headers = {h["name"].lower(): h.get("value", "") for h in (original.get("payload") or {}).get("headers") or []}

        subject = headers.get("subject", "")
        if not subject.lower().startswith("re:"):
            subject = f"Re: {subject}"

        mime = EmailMessage()
        mime["To"] = headers.get("reply-to") or headers.get("from", "")
        mime["Subject"] = subject
        rfc_message_id = headers.get("message-id")
        if rfc_message_id:
            mime["In-Reply-To"] = rfc_message_id
            mime["References"] = " ".join(filter(None, [headers.get("references"), rfc_message_id]))
        mime.set_content(body)
        return self._send_raw(access_token, mime, thread_id=original.get("threadId"))

    def forward(self, access_token: str, message_id: str, to: List[str],
                comment: Optional[str] = None) -> Optional[str]:
        original = self._get_message(access_token, message_id)
        message = self.normalize(original)

        subject = message.subject or ""
        if not subject.lower().startswith("fwd:"):
            subject = f"Fwd: {subject}"

        forwarded = "\n".join([
            comment or "",
            "",
            "---------- Forwarded message ---------",
            f"From: {message.sender_name or ''} <{message.sender_email or ''}>",
            f"Subject: {message.subject or ''}",
            "",
            message.body_text or message.snippet or "",
        ])

        mime = EmailMessage()
        mime["To"] = ", ".join(to)
        mime["Subject"] = subject
        mime.set_content(forwarded)
        return self._send_raw(access_token, mime)

    def mark_read(self, access_token: str, message_id: str) -> None:
        self._request(
            "POST",
            f"{self.base_url}/users/me/messages/{message_id}/modify",
            access_token,
            json={"removeLabelIds": ["UNREAD"]},
        )

    def delete_message(self, access_token: str, message_id: str) -> None:
        self._request("POST", f"{self.base_url}/users/me/messages/{message_id}/trash", access_token)

    # Push registrations

    def _topic_name(self) -> str:
        if not settings.google_project_id:
            raise EmailConnectorError("GOOGLE_PROJECT_ID is not configured")
        return f"projects/{settings.google_project_id}/topics/{settings.google_pubsub_topic}"

    def create_watch(self, access_token: str, account_id: Optional[str] = None) -> WatchInfo:
        response = self._request(
            "POST",
            f"{self.base_url}/users/me/watch",
            access_token,
            json={"topicName": self._topic_name(), "labelIds": WATCH_LABEL_IDS},
        )
        data = self._json(response)
        return WatchInfo(
            expiration=utc_from_timestamp_ms(data.get("expiration")),
            history_id=str(data["historyId"]) if data.get("historyId") else None,
        )

    def renew_watch(self, access_token: str, subscription_id: Optional[str] = None) -> WatchInfo:
        # Gmail has no renew call; re-issuing watch extends the existing one
        return self.create_watch(access_token)
