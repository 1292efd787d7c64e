from __future__ import annotations

import threading
import time
from typing import Callable, Dict, Optional, Tuple

from magiclink.logging import get_logger
from magiclink.storage.errors import LocalCacheFullError

DEFAULT_MAX_ENTRIES = 100_000


class LocalCache:
    """Process-local TTL cache used alone or as the fallback behind Redis.

    Entries are ``key -> (value, expires_at)`` on the injected monotonic clock.
    Expiry is lazy on access plus an explicit ``purge_expired`` sweep. All
    access goes through a single lock; every operation is a dict lookup so
    contention stays negligible.
    """

    name = "local"

    def __init__(
        self,
        *,
        max_entries: int = DEFAULT_MAX_ENTRIES,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.logger = get_logger(__name__)
        self.max_entries = max_entries
        self._clock = clock
        self._entries: Dict[str, Tuple[str, float]] = {}
        self._lock = threading.Lock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def _live_value(self, key: str, now: float) -> Optional[str]:
        # Caller holds the lock
        entry = self._entries.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if expires_at <= now:
            self._entries.pop(key, None)
            return None
        return value

    def _purge_locked(self, now: float) -> int:
        expired = [key for key, (_, expires_at) in self._entries.items() if expires_at <= now]
        for key in expired:
            self._entries.pop(key, None)
        return len(expired)

    async def put(self, key: str, value: str, ttl_seconds: int) -> None:
        now = self._clock()
        with self._lock:
            if key not in self._entries and len(self._entries) >= self.max_entries:
                self._purge_locked(now)
                if len(self._entries) >= self.max_entries:
                    raise LocalCacheFullError(
                        "local cache is full",
                        backend=self.name,
                        detail={"max_entries": self.max_entries},
                    )
            self._entries[key] = (value, now + max(1, ttl_seconds))

    async def get(self, key: str) -> Optional[str]:
        with self._lock:
            return self._live_value(key, self._clock())

    async def delete(self, key: str) -> None:
        with self._lock:
            self._entries.pop(key, None)

    async def pop(self, key: str) -> Optional[str]:
        with self._lock:
            value = self._live_value(key, self._clock())
            if value is not None:
                del self._entries[key]
            return value

    async def exists(self, key: str) -> bool:
        with self._lock:
            return self._live_value(key, self._clock()) is not None

    async def touch(self, key: str, ttl_seconds: int) -> bool:
        now = self._clock()
        with self._lock:
            value = self._live_value(key, now)
            if value is None:
                return False
            self._entries[key] = (value, now + max(1, ttl_seconds))
            return True

    async def is_available(self) -> bool:
        return True

    def purge_expired(self) -> int:
        """Drop expired entries; returns how many were removed."""
        with self._lock:
            removed = self._purge_locked(self._clock())
        if removed:
            self.logger.debug("local_cache_purged", removed=removed)
        return removed

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    async def close(self) -> None:
        self.clear()
