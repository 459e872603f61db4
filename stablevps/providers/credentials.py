"""
Provider Credential Cache
=========================

Explicit, injectable cache for short-lived provider access tokens
(Contabo OAuth2 tokens, Zomro session tokens).

Each adapter instance owns its own TokenCache. Refreshing happens under
a lock so concurrent callers wait for one token fetch instead of racing
the vendor's auth endpoint.
"""

import logging
import threading
import time
from dataclasses import dataclass
from typing import Callable, Optional

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AccessToken:
    """A bearer/session token and the epoch time it stops being valid."""
    value: str
    expires_at: float

    @classmethod
    def expiring_in(cls, value: str, seconds: float, clock: Callable[[], float] = time.time) -> "AccessToken":
        return cls(value=value, expires_at=clock() + seconds)


class TokenCache:
    """
    Caches one access token and refreshes it shortly before expiry.

    Refresh contract: `get(fetch)` returns a cached value while it is
    valid for at least `skew_seconds` more; otherwise it calls `fetch()`
    exactly once (even with concurrent callers), stores the result and
    returns its value. Errors raised by `fetch` propagate and leave the
    cache empty.
    """

    def __init__(self, skew_seconds: float = 60.0, clock: Callable[[], float] = time.time):
        self.skew_seconds = skew_seconds
        self._clock = clock
        self._token: Optional[AccessToken] = None
        self._lock = threading.Lock()

    @property
    def is_valid(self) -> bool:
        token = self._token
        return token is not None and self._clock() < token.expires_at - self.skew_seconds

    def get(self, fetch: Callable[[], AccessToken]) -> str:
        with self._lock:
            if not self.is_valid:
                logger.debug("Access token missing or expiring, refreshing")
                self._token = None
                self._token = fetch()
            return self._token.value

    def invalidate(self) -> None:
        """Drop the cached token so the next `get` fetches a new one."""
        with self._lock:
            self._token = None
