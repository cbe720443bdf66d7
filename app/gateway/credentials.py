"""
Cached gateway credential.

Holds one bearer token per gateway client. The local lifetime is capped
below the gateway's real TTL so a credential is never handed out after it
expires on the gateway side. Refreshes happen under an asyncio.Lock with
the expiry re-checked inside it, so concurrent callers share one refresh.
"""

import asyncio
import logging
import time
from datetime import datetime, timezone
from typing import Awaitable, Callable, Optional

from app.gateway.base import Credential

logger = logging.getLogger("payment_reconciler.gateway")


class CredentialCache:
    def __init__(
        self,
        max_age_seconds: float,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._max_age = max_age_seconds
        self._clock = clock
        self._credential: Optional[Credential] = None
        self._valid_until: float = 0.0
        self._lock = asyncio.Lock()

    def peek(self) -> Optional[Credential]:
        """Return the cached credential if still valid, without refreshing."""
        if self._credential is not None and self._clock() < self._valid_until:
            return self._credential
        return None

    async def get(self, fetch: Callable[[], Awaitable[Credential]]) -> Credential:
        """
        Return a valid credential, calling ``fetch`` only when the cache is empty or expired.

        A failing ``fetch`` propagates and leaves the cache empty.
        """
        cached = self.peek()
        if cached is not None:
            return cached

        async with self._lock:
            cached = self.peek()
            if cached is not None:
                return cached

            credential = await fetch()
            self._store(credential)
            return credential

    def invalidate(self) -> None:
        if self._credential is not None:
            logger.info("Invalidating cached gateway credential")
        self._credential = None
        self._valid_until = 0.0

    def _store(self, credential: Credential) -> None:
        lifetime = self._max_age
        if credential.expires_at is not None:
            expires_at = credential.expires_at
            if expires_at.tzinfo is None:
                expires_at = expires_at.replace(tzinfo=timezone.utc)
            remaining = (expires_at - datetime.now(timezone.utc)).total_seconds()
            lifetime = min(lifetime, remaining)

        self._credential = credential
        self._valid_until = self._clock() + max(lifetime, 0.0)
