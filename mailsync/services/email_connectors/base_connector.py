"""
Base Email Connector

Defines the interface and common HTTP handling for the provider connectors.
Every outbound call goes through ``BaseEmailConnector._request``, which bounds
each attempt by the caller's deadline, honours ``Retry-After`` on 429 and
retries transient failures with the shared exponential backoff.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Dict, Any, Optional, Tuple
from urllib.parse import urlparse
import time

import requests

from mailsync.config import settings
from mailsync.utils.backoff import backoff_delay
from mailsync.utils.datetime_utils import seconds_until
from mailsync.utils.logging import get_logger
from mailsync.utils.metrics import MetricsCollector
from mailsync.utils.rate_limiter import RateLimiter


class EmailConnectorError(Exception):
    """Base exception for email connector errors."""
    pass


class ProviderError(EmailConnectorError):
    """Provider rejected a request; not retried."""

    def __init__(self, message: str, status_code: Optional[int] = None, body: Optional[str] = None):
        super().__init__(message)
        self.status_code = status_code
        self.body = body


class TransientProviderError(ProviderError):
    """5xx, network failure or throttling that outlasted the retry budget."""
    pass


class RateLimitedError(TransientProviderError):
    """Provider kept answering 429."""
    pass


class ProviderAuthError(ProviderError):
    """Provider rejected the credentials (HTTP 401)."""
    pass


class AuthExpiredError(ProviderAuthError):
    """The refresh token itself was revoked or expired; the user must reconnect."""
    pass


class CursorExpiredError(ProviderError):
    """Incremental cursor is too old; a full sync is required."""
    pass


class SyncTimeoutError(EmailConnectorError):
    """The operation's deadline passed."""
    pass


@dataclass
class NormalizedMessage:
    """Provider-sourced fields of a cached message."""
    provider_message_id: str
    thread_id: Optional[str] = None
    sender_name: Optional[str] = None
    sender_email: Optional[str] = None
    recipient_emails: List[str] = field(default_factory=list)
    subject: Optional[str] = None
    snippet: Optional[str] = None
    body_html: Optional[str] = None
    body_text: Optional[str] = None
    received_at: Optional[datetime] = None
    is_read: bool = False
    is_starred: bool = False
    is_pinned: bool = False
    has_attachments: bool = False
    attachment_count: int = 0
    labels: List[str] = field(default_factory=list)


@dataclass
class MessagePage:
    """One page of normalized messages."""
    messages: List[NormalizedMessage]
    next_page_token: Optional[str] = None
    is_full_page: bool = False
    requested: int = 0  # ids listed by the provider, before any per-message skips


@dataclass
class ChangeSet:
    """Messages changed since an incremental cursor."""
    messages: List[NormalizedMessage]
    new_cursor: Optional[str] = None
    deleted_ids: List[str] = field(default_factory=list)


@dataclass
class WatchInfo:
    """Result of creating or renewing a push registration."""
    expiration: Optional[datetime]
    history_id: Optional[str] = None
    subscription_id: Optional[str] = None


class BaseEmailConnector(ABC):
    """
    Abstract base class for provider connectors.

    A connector is chosen once per account by ``EmailConnectorFactory`` and
    passed to everything that talks to the provider. Access tokens are passed
    per call; connectors never read or refresh tokens themselves.
    """

    provider: str = ""

    def __init__(
        self,
        session: Optional[requests.Session] = None,
        rate_limiter: Optional[RateLimiter] = None,
        sleep=time.sleep,
        max_attempts: Optional[int] = None,
        request_timeout: Optional[float] = None,
    ):
        self.session = session or requests.Session()
        self.rate_limiter = rate_limiter or self._default_rate_limiter()
        self.sleep = sleep
        self.max_attempts = max_attempts or settings.provider_max_attempts
        self.request_timeout = request_timeout or settings.provider_request_timeout
        self.logger = get_logger(f"{self.provider}_connector")

    @abstractmethod
    def _default_rate_limiter(self) -> RateLimiter:
        pass

    # Sync

    @abstractmethod
    def fetch_messages_page(
        self,
        access_token: str,
        page_token: Optional[str] = None,
        page_size: int = 100,
        deadline: Optional[datetime] = None,
    ) -> MessagePage:
        """Fetch one page of messages, newest first."""
        pass

    @abstractmethod
    def normalize(self, raw: Dict[str, Any]) -> NormalizedMessage:
        """Map a raw provider message onto cached-message fields."""
        pass

    @abstractmethod
    def fetch_changes(
        self,
        access_token: str,
        cursor: Optional[str],
        deadline: Optional[datetime] = None,
    ) -> ChangeSet:
        """Fetch messages changed since cursor."""
        pass

    # Outbound actions

    @abstractmethod
    def send_message(self, access_token: str, to: List[str], subject: str, body: str,
                     cc: Optional[List[str]] = None) -> Optional[str]:
        pass

    @abstractmethod
    def reply(self, access_token: str, message_id: str, body: str) -> Optional[str]:
        pass

    @abstractmethod
    def forward(self, access_token: str, message_id: str, to: List[str],
                comment: Optional[str] = None) -> Optional[str]:
        pass

    @abstractmethod
    def mark_read(self, access_token: str, message_id: str) -> None:
        pass

    @abstractmethod
    def delete_message(self, access_token: str, message_id: str) -> None:
        pass

    # OAuth

    @abstractmethod
    def token_refresh_request(self, refresh_token: str) -> Tuple[str, Dict[str, str]]:
        """Token endpoint URL and form body that exchange a refresh token for a new access token."""
        pass

    # Push registrations

    @abstractmethod
    def create_watch(self, access_token: str, account_id: Optional[str] = None) -> WatchInfo:
        pass

    @abstractmethod
    def renew_watch(self, access_token: str, subscription_id: Optional[str] = None) -> WatchInfo:
        pass

    # HTTP

    def _attempt_timeout(self, deadline: Optional[datetime]) -> float:
        remaining = seconds_until(deadline)
        if remaining is None:
            return self.request_timeout
        if remaining <= 0:
            raise SyncTimeoutError("Sync timeout: deadline exceeded before provider request")
        return min(self.request_timeout, remaining)

    def _wait_before_retry(self, attempt: int, delay: float, deadline: Optional[datetime], reason: str):
        if attempt >= self.max_attempts:
            return
        remaining = seconds_until(deadline)
        if remaining is not None and remaining <= delay:
            raise SyncTimeoutError(f"Sync timeout: no time left to wait {delay:.1f}s after {reason}")
        MetricsCollector.increment_provider_retry(self.provider, reason)
        self.logger.info(f"Attempt {attempt}/{self.max_attempts} hit {reason}; waiting {delay:.1f}s")
        self.sleep(delay)

    @staticmethod
    def _retry_after_seconds(response: requests.Response) -> float:
        value = response.headers.get("Retry-After")
        try:
            return max(float(value), 0.0) if value is not None else settings.provider_default_retry_after
        except ValueError:
            return settings.provider_default_retry_after

    def _request(
        self,
        method: str,
        url: str,
        access_token: str,
        deadline: Optional[datetime] = None,
        headers: Optional[Dict[str, str]] = None,
        **kwargs,
    ) -> requests.Response:
        """
        Perform an authenticated provider request.

        Raises:
            SyncTimeoutError: deadline passed before or between attempts
            RateLimitedError: every attempt was answered with 429
            TransientProviderError: 5xx or network errors on every attempt
            ProviderAuthError: HTTP 401
            ProviderError: any other 4xx
        """
        request_headers = {"Authorization": f"Bearer {access_token}"}
        if headers:
            request_headers.update(headers)

        path = urlparse(url).path
        last_error = None
        rate_limited = False

        for attempt in range(1, self.max_attempts + 1):
            timeout = self._attempt_timeout(deadline)
            try:
                with self.rate_limiter.limit():
                    response = self.session.request(method, url, headers=request_headers, timeout=timeout, **kwargs)
            except requests.RequestException as e:
                last_error = f"Network error: {e}"
                rate_limited = False
                self._wait_before_retry(attempt, backoff_delay(attempt), deadline, "network_error")
                continue

            status = response.status_code
            if status == 429:
                last_error = "Rate limited (HTTP 429)"
                rate_limited = True
                self._wait_before_retry(attempt, self._retry_after_seconds(response), deadline, "rate_limited")
                continue

            if status >= 500:
                last_error = f"HTTP {status}: {response.text[:500]}"
                rate_limited = False
                self._wait_before_retry(attempt, backoff_delay(attempt), deadline, "server_error")
                continue

            if status == 401:
                raise ProviderAuthError(f"{method} {path} unauthorized", status_code=status, body=response.text)

            if status >= 400:
                raise ProviderError(
                    f"{method} {path} failed with HTTP {status}: {response.text[:500]}",
                    status_code=status,
                    body=response.text,
                )

            return response

        message = f"{method} {path} failed after {self.max_attempts} attempts: {last_error}"
        self.logger.error(message)
        if rate_limited:
            raise RateLimitedError(message, status_code=429)
        raise TransientProviderError(message)

    def _json(self, response: requests.Response) -> Dict[str, Any]:
        if response.status_code == 204 or not response.content:
            return {}
        try:
            return response.json()
        except ValueError as e:
            raise ProviderError(f"Invalid JSON from {self.provider}: {e}", status_code=response.status_code)
