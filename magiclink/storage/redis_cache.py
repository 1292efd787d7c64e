from __future__ import annotations

import asyncio
import time
from typing import Any, Awaitable, Callable, Optional

import redis.asyncio as aioredis
from redis import Redis
from redis.exceptions import RedisError, ResponseError

from magiclink.config import mask_url_password
from magiclink.logging import get_logger
from magiclink.storage.errors import StorageBackendError

logger = get_logger(__name__)


class RedisCache:
    """Redis-backed TTL cache shared by every service instance.

    Every command is bounded by ``operation_timeout``. A failed command or probe
    marks the backend unavailable for ``failure_cooldown`` seconds so callers
    fall back to the local cache without paying a network round-trip per call;
    a successful probe is trusted for ``probe_interval`` seconds.
    """

    name = "redis"

    DEFAULT_OPERATION_TIMEOUT = 3.0

    # Atomic get-and-delete for servers older than 6.2 (no GETDEL)
    _POP_SCRIPT = """
local value = redis.call('GET', KEYS[1])
if value then
    redis.call('DEL', KEYS[1])
end
return value
"""

    def __init__(
        self,
        redis_url: str,
        *,
        operation_timeout: float = DEFAULT_OPERATION_TIMEOUT,
        probe_interval: float = 5.0,
        failure_cooldown: float = 10.0,
        client: Any = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.redis_url = redis_url
        self.operation_timeout = operation_timeout
        self.probe_interval = probe_interval
        self.failure_cooldown = failure_cooldown
        self._clock = clock
        self.client = client or aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=operation_timeout,
            socket_connect_timeout=operation_timeout,
        )
        self._available_until = 0.0
        self._unavailable_until = 0.0

    def verify_connection(self) -> None:
        """Assert Redis connectivity at startup.

        Uses a short-lived synchronous client so the async client is not bound
        to a temporary event loop.
        """
        sync_client = Redis.from_url(
            self.redis_url,
            decode_responses=True,
            socket_timeout=self.operation_timeout,
            socket_connect_timeout=self.operation_timeout,
        )
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    def _mark_failed(self, operation: str, exc: BaseException) -> None:
        was_healthy = self._unavailable_until <= self._clock()
        self._available_until = 0.0
        self._unavailable_until = self._clock() + self.failure_cooldown
        if was_healthy:
            logger.warning(
                "redis_marked_unavailable",
                operation=operation,
                error_type=type(exc).__name__,
                error=str(exc),
                redis_url=mask_url_password(self.redis_url),
                cooldown_seconds=self.failure_cooldown,
            )

    async def _run(self, operation: str, awaitable: Awaitable[Any]) -> Any:
        try:
            return await asyncio.wait_for(awaitable, timeout=self.operation_timeout)
        except asyncio.TimeoutError as exc:
            self._mark_failed(operation, exc)
            raise StorageBackendError(
                f"redis {operation} timed out", backend=self.name
            ) from exc
        except ResponseError as exc:
            # The server answered; the command itself was rejected
            raise StorageBackendError(
                f"redis {operation} rejected", backend=self.name, detail={"error": str(exc)}
            ) from exc
        except (RedisError, OSError) as exc:
            self._mark_failed(operation, exc)
            raise StorageBackendError(
                f"redis {operation} failed", backend=self.name, detail={"error": type(exc).__name__}
            ) from exc

    async def ping(self) -> bool:
        """Probe the server, bypassing the cached availability state."""
        try:
            await self._run("ping", self.client.ping())
        except StorageBackendError:
            return False
        self._unavailable_until = 0.0
        self._available_until = self._clock() + self.probe_interval
        return True

    async def is_available(self) -> bool:
        now = self._clock()
        if now < self._unavailable_until:
            return False
        if now < self._available_until:
            return True
        return await self.ping()

    async def put(self, key: str, value: str, ttl_seconds: int) -> None:
        await self._run("set", self.client.set(key, value, ex=max(1, int(ttl_seconds))))

    async def get(self, key: str) -> Optional[str]:
        return await self._run("get", self.client.get(key))

    async def delete(self, key: str) -> None:
        await self._run("delete", self.client.delete(key))

    async def pop(self, key: str) -> Optional[str]:
        """Atomically get and delete ``key`` so concurrent readers cannot both win.

        Uses GETDEL (Redis 6.2+) and falls back to a Lua script on servers that
        reject the command.
        """
        try:
            return await self._run("getdel", self.client.getdel(key))
        except StorageBackendError as exc:
            if not isinstance(exc.__cause__, ResponseError):
                raise
        return await self._run("eval_pop", self.client.eval(self._POP_SCRIPT, 1, key))

    async def exists(self, key: str) -> bool:
        return bool(await self._run("exists", self.client.exists(key)))

    async def touch(self, key: str, ttl_seconds: int) -> bool:
        # EXPIRE is a no-op on a missing key, so a deleted entry is never recreated
        return bool(await self._run("expire", self.client.expire(key, max(1, int(ttl_seconds)))))

    async def close(self) -> None:
        """Close the connection pool. Call when shutting down."""
        await self.client.aclose()
