from __future__ import annotations

from typing import Optional

from magiclink.logging import get_logger
from magiclink.storage.base import CacheBackend
from magiclink.storage.errors import StorageBackendError
from magiclink.storage.memory import LocalCache

logger = get_logger(__name__)


class FallbackCache:
    """Distributed-first cache that degrades to the process-local cache.

    Writes go to the distributed backend when it is configured and available,
    otherwise (or when the write fails) to the local cache. Reads try the
    distributed backend first and consult the local cache on a miss or a
    failure, so entries written during an outage stay reachable from this
    process. Distributed errors never escape from writes or reads; local
    errors do, since there is nothing left to fall back to. ``delete`` reports
    a distributed failure to the caller.
    """

    def __init__(self, local: LocalCache, distributed: Optional[CacheBackend] = None) -> None:
        self.local = local
        self.distributed = distributed

    @property
    def distributed_configured(self) -> bool:
        return self.distributed is not None

    async def _active_distributed(self) -> Optional[CacheBackend]:
        if self.distributed is None:
            return None
        if not await self.distributed.is_available():
            return None
        return self.distributed

    def _log_fallback(self, operation: str, key: str, exc: StorageBackendError) -> None:
        logger.warning(
            "cache_fallback_to_local",
            operation=operation,
            key_prefix=key.split(":", 1)[0],
            backend=exc.backend,
            error=exc.message,
        )

    async def put(self, key: str, value: str, ttl_seconds: int) -> str:
        """Store ``value``; returns the name of the backend that accepted it."""
        distributed = await self._active_distributed()
        if distributed is not None:
            try:
                await distributed.put(key, value, ttl_seconds)
                return distributed.name
            except StorageBackendError as exc:
                self._log_fallback("put", key, exc)
        await self.local.put(key, value, ttl_seconds)
        return self.local.name

    async def get(self, key: str) -> Optional[str]:
        distributed = await self._active_distributed()
        if distributed is not None:
            try:
                value = await distributed.get(key)
                if value is not None:
                    return value
            except StorageBackendError as exc:
                self._log_fallback("get", key, exc)
        return await self.local.get(key)

    async def pop(self, key: str) -> Optional[str]:
        distributed = await self._active_distributed()
        if distributed is not None:
            try:
                value = await distributed.pop(key)
                if value is not None:
                    return value
            except StorageBackendError as exc:
                self._log_fallback("pop", key, exc)
        return await self.local.pop(key)

    async def exists(self, key: str) -> bool:
        distributed = await self._active_distributed()
        if distributed is not None:
            try:
                if await distributed.exists(key):
                    return True
            except StorageBackendError as exc:
                self._log_fallback("exists", key, exc)
        return await self.local.exists(key)

    async def touch(self, key: str, ttl_seconds: int) -> bool:
        """Extend ``key`` wherever it lives; never recreates a deleted entry."""
        distributed = await self._active_distributed()
        if distributed is not None:
            try:
                if await distributed.touch(key, ttl_seconds):
                    return True
            except StorageBackendError as exc:
                self._log_fallback("touch", key, exc)
        return await self.local.touch(key, ttl_seconds)

    async def delete(self, key: str) -> None:
        """Remove ``key`` from every backend.

        The distributed delete is attempted even while the backend is marked
        unavailable, since a copy written before the outage would otherwise
        reappear on recovery. Its failure is raised after the local copy is
        gone.
        """
        failure: Optional[StorageBackendError] = None
        if self.distributed is not None:
            try:
                await self.distributed.delete(key)
            except StorageBackendError as exc:
                logger.error(
                    "cache_delete_failed",
                    key_prefix=key.split(":", 1)[0],
                    backend=exc.backend,
                    error=exc.message,
                )
                failure = exc
        await self.local.delete(key)
        if failure is not None:
            raise failure

    async def close(self) -> None:
        if self.distributed is not None:
            await self.distributed.close()
        await self.local.close()
