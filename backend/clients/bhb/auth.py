"""Time-bounded credential cache for the BHB client.

Credentials are owned by an external settings collaborator and may be
rotated at any time. The cache is an explicit object handed to the client,
never a module-level singleton, so each client (and each test) owns its own
expiry state.
"""

from __future__ import annotations

import threading
import time
from typing import Callable, Optional, Tuple

from backend.apps.receivables.errors import ConfigurationError

from .dto import BhbCredentials

CredentialsProvider = Callable[[], Optional[BhbCredentials]]


class AuthCache:
    """Caches resolved credentials and their Basic header for ``ttl_seconds``."""

    def __init__(
        self,
        provider: CredentialsProvider,
        *,
        ttl_seconds: float = 300.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._provider = provider
        self.ttl_seconds = float(ttl_seconds)
        self._clock = clock
        self._lock = threading.Lock()
        self._credentials: Optional[BhbCredentials] = None
        self._header: Optional[str] = None
        self._expires_at = 0.0

    @property
    def is_valid(self) -> bool:
        return self._credentials is not None and self._clock() < self._expires_at

    def get(self) -> Tuple[BhbCredentials, str]:
        """Return cached credentials, refreshing from the provider on miss or expiry.

        Raises:
            ConfigurationError: If the provider yields no or incomplete credentials.
        """
        with self._lock:
            if not self.is_valid:
                self._refresh()
            if self._credentials is None or self._header is None:
                raise ConfigurationError("BHB API nicht konfiguriert")
            return self._credentials, self._header

    def invalidate(self) -> None:
        with self._lock:
            self._credentials = None
            self._header = None
            self._expires_at = 0.0

    def _refresh(self) -> None:
        credentials = self._provider()
        if credentials is None or not credentials.is_complete:
            self._credentials = None
            self._header = None
            raise ConfigurationError("BHB API nicht konfiguriert")
        self._credentials = credentials
        self._header = credentials.basic_auth_header()
        self._expires_at = self._clock() + self.ttl_seconds


def settings_credentials() -> Optional[BhbCredentials]:
    """Read credentials from the application settings."""
    from backend.core.config import settings

    return BhbCredentials(
        api_key=settings.BHB_API_KEY,
        api_client=settings.BHB_API_CLIENT,
        api_secret=settings.BHB_API_SECRET,
    )
