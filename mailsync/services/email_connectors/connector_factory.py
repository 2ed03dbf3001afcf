"""
Email Connector Factory

Resolves an account's provider tag to its connector class once, so callers
receive a connector object and never branch on provider strings.
"""

from typing import Dict, Type, List

from mailsync.utils.logging import get_logger

from .base_connector import BaseEmailConnector, EmailConnectorError
from .gmail_connector import GmailConnector
from .outlook_connector import OutlookConnector

logger = get_logger("connector_factory")


class UnsupportedProviderError(EmailConnectorError):
    pass


class EmailConnectorFactory:
    """Factory for creating email connectors based on provider type."""

    def __init__(self):
        self._connector_registry: Dict[str, Type[BaseEmailConnector]] = {
            "gmail": GmailConnector,
            "outlook": OutlookConnector,
        }
        self._instances: Dict[str, BaseEmailConnector] = {}

    def register(self, provider: str, connector_class: Type[BaseEmailConnector]):
        self._connector_registry[provider.lower()] = connector_class
        self._instances.pop(provider.lower(), None)

    def supported_providers(self) -> List[str]:
        return list(self._connector_registry.keys())

    def get_connector(self, provider: str) -> BaseEmailConnector:
        """
        Return the shared connector for a provider.

        Connector instances hold the provider's rate limiter, so one instance
        per provider is reused across accounts within a worker process.

        Raises:
            UnsupportedProviderError: provider has no registered connector
        """
        key = (provider or "").lower()
        if key not in self._connector_registry:
            logger.error(f"Unsupported provider: {provider}")
            raise UnsupportedProviderError(
                f"Unsupported provider: {provider} (expected one of {self.supported_providers()})"
            )

        if key not in self._instances:
            self._instances[key] = self._connector_registry[key]()
        return self._instances[key]

    def for_account(self, account) -> BaseEmailConnector:
        return self.get_connector(account.provider)


# Global factory instance
connector_factory = EmailConnectorFactory()
