from __future__ import annotations

from typing import Optional, Protocol


class CacheBackend(Protocol):
    """Key/value contract with per-entry TTL shared by the Redis and local caches.

    Failures raise ``StorageBackendError``; an absent or expired key is ``None``
    (or ``False`` for ``exists``), never an error.
    """

    name: str

    async def put(self, key: str, value: str, ttl_seconds: int) -> None: ...

    async def get(self, key: str) -> Optional[str]: ...

    async def delete(self, key: str) -> None: ...

    async def pop(self, key: str) -> Optional[str]:
        """Atomically read and remove ``key``."""
        ...

    async def exists(self, key: str) -> bool: ...

    async def touch(self, key: str, ttl_seconds: int) -> bool:
        """Reset the TTL of an existing ``key``; ``False`` if it is absent."""
        ...

    async def is_available(self) -> bool: ...

    async def close(self) -> None: ...
