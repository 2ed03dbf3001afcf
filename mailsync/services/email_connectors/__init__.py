"""
Provider connectors for Gmail and Outlook.
"""

from .base_connector import (
    BaseEmailConnector,
    EmailConnectorError,
    ProviderError,
    TransientProviderError,
    RateLimitedError,
    ProviderAuthError,
    AuthExpiredError,
    CursorExpiredError,
    SyncTimeoutError,
    NormalizedMessage,
    MessagePage,
    ChangeSet,
    WatchInfo,
)
from .gmail_connector import GmailConnector
from .outlook_connector import OutlookConnector
from .connector_factory import EmailConnectorFactory, UnsupportedProviderError, connector_factory

__all__ = [
    "BaseEmailConnector",
    "EmailConnectorError",
    "ProviderError",
    "TransientProviderError",
    "RateLimitedError",
    "ProviderAuthError",
    "AuthExpiredError",
    "CursorExpiredError",
    "SyncTimeoutError",
    "NormalizedMessage",
    "MessagePage",
    "ChangeSet",
    "WatchInfo",
    "GmailConnector",
    "OutlookConnector",
    "EmailConnectorFactory",
    "UnsupportedProviderError",
    "connector_factory",
]
