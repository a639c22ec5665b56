"""
Cloud provider credentials for provisioning programs.

Credentials are kept in memory only and handed to each child process as
environment variables. Nothing here is ever written into a job record.

Usage:
    from core.credentials import InMemoryCredentialProvider

    credentials = InMemoryCredentialProvider.from_settings(get_settings())
    env = credentials.environment("ovh")
"""

import logging
import threading
from typing import Dict, Optional, Protocol

logger = logging.getLogger(__name__)

OVH_ENV_VARS = (
    "OVH_APPLICATION_KEY",
    "OVH_APPLICATION_SECRET",
    "OVH_CONSUMER_KEY",
    "OVH_SERVICE_NAME",
    "OVH_ENDPOINT",
)


class CredentialProvider(Protocol):
    """Anything that can produce environment entries for a provider."""

    def environment(self, provider: str) -> Dict[str, str]:
        ...


class InMemoryCredentialProvider:
    """
    Thread-safe credential holder, keyed by provider name.

    Returned dicts are copies, so callers can modify them freely.
    """

    def __init__(self):
        self._credentials: Dict[str, Dict[str, str]] = {}
        self._lock = threading.Lock()

    def set(self, provider: str, env: Dict[str, str]) -> None:
        with self._lock:
            self._credentials[provider] = dict(env)
        logger.info(f"Credentials configured for provider {provider}")

    def environment(self, provider: str) -> Dict[str, str]:
        with self._lock:
            return dict(self._credentials.get(provider, {}))

    def has(self, provider: str) -> bool:
        with self._lock:
            return bool(self._credentials.get(provider))

    def clear(self, provider: Optional[str] = None) -> None:
        with self._lock:
            if provider is None:
                self._credentials.clear()
            else:
                self._credentials.pop(provider, None)

    @classmethod
    def from_settings(cls, settings) -> "InMemoryCredentialProvider":
        """Seed OVH credentials from settings when all of them are present."""
        provider = cls()
        ovh = settings.ovh
        if ovh.is_configured:
            provider.set("ovh", ovh.environment())
        else:
            logger.warning("OVH credentials not configured; provisioning will fail until they are set")
        return provider
