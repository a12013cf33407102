"""Email to chat-account resolution with a bounded-TTL cache."""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass

from revbot.interfaces import ChatProvider
from revbot.models import ResolvedRecipient
from revbot.redaction import fingerprint

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DirectoryCacheEntry:
    account_id: str | None  # None records "no matching chat account"
    expires_at: float


class DirectoryCache:
    """Thread-safe ``email -> DirectoryCacheEntry`` map.

    Expired entries are evicted lazily when they are read; nothing sweeps
    the map in the background.
    """

    def __init__(self, ttl: float, clock: Callable[[], float] = time.monotonic) -> None:
        self.ttl = ttl
        self._clock = clock
        self._entries: dict[str, DirectoryCacheEntry] = {}
        self._lock = threading.Lock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def get(self, email: str) -> DirectoryCacheEntry | None:
        with self._lock:
            entry = self._entries.get(email)
            if entry is None:
                return None
            if entry.expires_at <= self._clock():
                del self._entries[email]
                return None
            return entry

    def put(self, email: str, account_id: str | None) -> DirectoryCacheEntry:
        entry = DirectoryCacheEntry(account_id=account_id, expires_at=self._clock() + self.ttl)
        with self._lock:
            self._entries[email] = entry
        return entry

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()


class DirectoryResolver:
    """The only component that calls the chat provider's lookup endpoint."""

    def __init__(
        self,
        provider: ChatProvider,
        cache: DirectoryCache,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._provider = provider
        self._cache = cache
        self._clock = clock

    def resolve(self, email: str) -> ResolvedRecipient | None:
        """Map an email to a chat account.

        Returns ``None`` when the provider has no such account; that answer
        is cached for the same TTL as a hit. ``TransientError`` and
        ``PermanentError`` from the provider propagate and are not cached.
        """
        entry = self._cache.get(email)
        if entry is not None:
            logger.debug("Directory cache hit for %s", fingerprint(email))
            return self._to_recipient(email, entry.account_id)

        logger.debug("Directory cache miss for %s", fingerprint(email))
        account_id = self._provider.lookup(email)
        self._cache.put(email, account_id)

        if account_id is None:
            logger.info("No chat account for %s; caching not-found", fingerprint(email))
        return self._to_recipient(email, account_id)

    def _to_recipient(self, email: str, account_id: str | None) -> ResolvedRecipient | None:
        if account_id is None:
            return None
        return ResolvedRecipient(email=email, account_id=account_id, resolved_at=self._clock())
