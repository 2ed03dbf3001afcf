"""
Token Store

Hands out valid provider access tokens, refreshing them through the
provider's OAuth token endpoint when the stored one has expired.
"""

import time
from datetime import timedelta
from typing import Callable, Dict, Any, Optional

import requests
from sqlalchemy.orm import Session

from mailsync.config import settings
from mailsync.db.models import EmailAccount, OAuthToken, WatchRegistration
from mailsync.services.email_connectors.base_connector import (
    AuthExpiredError,
    EmailConnectorError,
    ProviderError,
    TransientProviderError,
)
from mailsync.services.email_connectors.connector_factory import connector_factory
from mailsync.utils.backoff import retry_with_backoff
from mailsync.utils.datetime_utils import utc_now, to_utc
from mailsync.utils.logging import get_logger

REVOCATION_ERRORS = ("invalid_grant", "unauthorized_client")
REVOCATION_PHRASES = ("expired or revoked",)


class TokenNotFoundError(EmailConnectorError):
    """Account has no stored OAuth token set."""
    pass


class TokenStore:
    """Per-account OAuth token access and refresh."""

    def __init__(self, session: Optional[requests.Session] = None, sleep: Callable[[float], None] = time.sleep,
                 factory=None):
        self.session = session or requests.Session()
        self.factory = factory or connector_factory
        self.sleep = sleep
        self.logger = get_logger("token_store")

    def get_valid_access_token(self, db: Session, account: EmailAccount) -> str:
        """
        Return a usable access token for the account.

        An unexpired stored token is returned as is. Otherwise the refresh
        token is exchanged and the new access token, expiry and (when the
        provider rotates it) refresh token are persisted before returning.

        Raises:
            TokenNotFoundError: no token row for the account
            AuthExpiredError: the refresh token was revoked or has expired
            TransientProviderError: token endpoint still unreachable or 5xx after retries
            ProviderError: any other refresh rejection
        """
        token = db.query(OAuthToken).filter_by(account_id=account.id).first()
        if not token:
            raise TokenNotFoundError(f"No OAuth tokens stored for account {account.id}")

        expires_at = to_utc(token.expires_at)
        if expires_at is not None and expires_at > utc_now():
            return token.access_token

        if not token.refresh_token:
            raise AuthExpiredError("Access token expired and no refresh token is stored")

        self.logger.info(f"Access token for {account.email} expired, refreshing")
        payload = retry_with_backoff(
            lambda: self._refresh(account, token.refresh_token),
            max_attempts=settings.provider_max_attempts,
            retry_on=(TransientProviderError,),
            sleep=self.sleep,
            description=f"Token refresh for {account.email}",
        )

        token.access_token = payload["access_token"]
        token.expires_at = utc_now() + timedelta(seconds=int(payload.get("expires_in", 3600)))
        if payload.get("refresh_token"):
            token.refresh_token = payload["refresh_token"]
        if payload.get("scope"):
            token.scope = payload["scope"]
        db.commit()

        self.logger.info(f"Refreshed access token for {account.email}, expires {token.expires_at.isoformat()}")
        return token.access_token

    def _refresh(self, account: EmailAccount, refresh_token: str) -> Dict[str, Any]:
        url, form = self.factory.for_account(account).token_refresh_request(refresh_token)

        try:
            response = self.session.post(url, data=form, timeout=settings.provider_request_timeout)
        except requests.RequestException as e:
            raise TransientProviderError(f"Token refresh request failed: {e}")

        if response.status_code == 200:
            try:
                payload = response.json()
            except ValueError:
                raise ProviderError("Token endpoint returned a non-JSON body", status_code=200, body=response.text)
            if not isinstance(payload, dict) or not payload.get("access_token"):
                raise ProviderError("Token endpoint response has no access_token", status_code=200, body=response.text)
            return payload

        error, description = self._parse_error(response)
        message = f"Token refresh failed ({response.status_code}): {error or 'unknown'} {description or ''}".strip()
        self.logger.error(message)

        if self.is_revocation(error, description):
            raise AuthExpiredError(message, status_code=response.status_code, body=response.text)
        if response.status_code >= 500 or response.status_code == 429:
            raise TransientProviderError(message, status_code=response.status_code, body=response.text)
        raise ProviderError(message, status_code=response.status_code, body=response.text)

    @staticmethod
    def _parse_error(response: requests.Response):
        try:
            data = response.json()
        except ValueError:
            return None, response.text
        if not isinstance(data, dict):
            return None, str(data)
        error = data.get("error")
        if isinstance(error, dict):
            # Google wraps some errors as {"error": {"status": ..., "message": ...}}
            return error.get("status"), error.get("message")
        return error, data.get("error_description")

    @staticmethod
    def is_revocation(error: Optional[str], description: Optional[str]) -> bool:
        if error in REVOCATION_ERRORS:
            return True
        text = (description or "").lower()
        return any(phrase in text for phrase in REVOCATION_PHRASES)

    def deactivate_account(self, db: Session, account: EmailAccount, reason: str = None):
        """Mark the account and its watch registrations inactive; the user must reconnect."""
        account.is_active = False
        db.query(WatchRegistration).filter_by(account_id=account.id).update(
            {WatchRegistration.is_active: False, WatchRegistration.updated_at: utc_now()},
            synchronize_session="fetch",
        )
        db.commit()
        self.logger.warning(f"Deactivated account {account.email}: {reason or 'authorization revoked'}")


# Global instance
token_store = TokenStore()
