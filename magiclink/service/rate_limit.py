from __future__ import annotations

from enum import Enum
from typing import Iterable, Tuple

from magiclink.logging import get_logger
from magiclink.storage.errors import StorageBackendError
from magiclink.storage.fallback import FallbackCache

logger = get_logger(__name__)

DEFAULT_WINDOW_SECONDS = 60


class RateScope(str, Enum):
    """Identity kinds a magic link request is throttled by."""

    IP = "ip"
    EMAIL = "email"


class RateDecision(str, Enum):
    ALLOWED = "allowed"
    THROTTLED = "throttled"


class RateLimiter:
    """One request per identity per window, tracked as TTL flags.

    ``check`` is read-only; ``mark`` sets ``rate:<scope>:<identity>`` for the
    window once the guarded action went through. Flags are never deleted
    explicitly, they lapse with the backend TTL.
    """

    def __init__(
        self, cache: FallbackCache, *, window_seconds: int = DEFAULT_WINDOW_SECONDS
    ) -> None:
        self.cache = cache
        self.window_seconds = window_seconds

    @staticmethod
    def _key(scope: RateScope, identity: str) -> str:
        return f"rate:{RateScope(scope).value}:{identity.strip().lower()}"

    async def check(self, scope: RateScope, identity: str) -> RateDecision:
        key = self._key(scope, identity)
        try:
            flagged = await self.cache.exists(key)
        except StorageBackendError as exc:
            # Fail open when no backend can answer
            logger.error("rate_limit_check_failed", scope=RateScope(scope).value, error=exc.message)
            return RateDecision.ALLOWED
        return RateDecision.THROTTLED if flagged else RateDecision.ALLOWED

    async def check_all(
        self, identities: Iterable[Tuple[RateScope, str]]
    ) -> RateDecision:
        """Throttled if any scope is flagged; every scope is checked independently."""
        for scope, identity in identities:
            if await self.check(scope, identity) is RateDecision.THROTTLED:
                logger.info("rate_limit_hit", scope=RateScope(scope).value)
                return RateDecision.THROTTLED
        return RateDecision.ALLOWED

    async def mark(self, scope: RateScope, identity: str) -> None:
        key = self._key(scope, identity)
        try:
            await self.cache.put(key, "1", self.window_seconds)
        except StorageBackendError as exc:
            logger.error("rate_limit_mark_failed", scope=RateScope(scope).value, error=exc.message)
