"""Shared fixtures: in-memory SQLite database, account factories and HTTP fakes."""

import json
import os
from datetime import timedelta
from unittest.mock import MagicMock

# Settings are read at import time; point everything at in-process backends first
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["CELERY_BROKER_URL"] = "memory://"
os.environ["CELERY_RESULT_BACKEND"] = "cache+memory://"
os.environ.pop("API_KEY", None)
os.environ.pop("OUTLOOK_CLIENT_STATE", None)

import pytest

from mailsync.db.database import create_tables, drop_tables, sync_session_factory
from mailsync.db.models import EmailAccount, OAuthToken, WatchRegistration
from mailsync.services.email_connectors import GmailConnector, NormalizedMessage, OutlookConnector
from mailsync.utils.datetime_utils import utc_now
from mailsync.utils.rate_limiter import RateLimiter


def build_response(status_code=200, json_data=None, headers=None, text=None):
    response = MagicMock()
    response.status_code = status_code
    response.headers = headers or {}
    if json_data is not None:
        response.json.return_value = json_data
        response.text = text if text is not None else json.dumps(json_data)
    else:
        response.json.side_effect = ValueError("No JSON object could be decoded")
        response.text = text or ""
    response.content = response.text.encode("utf-8")
    return response


@pytest.fixture
def make_response():
    """Factory for fake ``requests.Response`` objects."""
    return build_response


@pytest.fixture
def db():
    """Fresh schema per test."""
    create_tables()
    session = sync_session_factory()
    try:
        yield session
    finally:
        session.rollback()
        session.close()
        drop_tables()


@pytest.fixture
def make_account(db):
    def _make(email="user@example.com", provider="gmail", is_active=True, token_expires_in=3600,
              access_token="stored-access-token", refresh_token="stored-refresh-token", **kwargs):
        account = EmailAccount(email=email, provider=provider, is_active=is_active, **kwargs)
        db.add(account)
        db.flush()
        db.add(OAuthToken(
            account_id=account.id,
            access_token=access_token,
            refresh_token=refresh_token,
            expires_at=utc_now() + timedelta(seconds=token_expires_in),
        ))
        db.commit()
        return account
    return _make


@pytest.fixture
def make_watch(db):
    def _make(account, history_id=None, subscription_id=None, is_active=True, expires_in=timedelta(days=3)):
        watch = WatchRegistration(
            account_id=account.id,
            provider=account.provider,
            history_id=history_id,
            subscription_id=subscription_id,
            is_active=is_active,
            expiration=utc_now() + expires_in,
        )
        db.add(watch)
        db.commit()
        return watch
    return _make


@pytest.fixture
def make_messages():
    def _make(count, prefix="msg", start=0, **fields):
        return [
            NormalizedMessage(provider_message_id=f"{prefix}-{i}", subject=f"Subject {i}", **fields)
            for i in range(start, start + count)
        ]
    return _make


@pytest.fixture
def http_session():
    return MagicMock()


@pytest.fixture
def sleep():
    return MagicMock()


@pytest.fixture
def gmail_connector(http_session, sleep):
    return GmailConnector(session=http_session, rate_limiter=RateLimiter(5, 0), sleep=sleep,
                          base_url="https://gmail.test/v1")


@pytest.fixture
def outlook_connector(http_session, sleep):
    return OutlookConnector(session=http_session, rate_limiter=RateLimiter(3, 0), sleep=sleep,
                            base_url="https://graph.test/v1.0")
