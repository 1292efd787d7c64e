from __future__ import annotations

from typing import Any, Dict, Optional


class StorageBackendError(Exception):
    """Raised when a cache backend cannot complete an operation."""

    def __init__(
        self, message: str, *, backend: str, detail: Optional[Dict[str, Any]] = None
    ):
        super().__init__(message)
        self.message = message
        self.backend = backend
        self.detail = detail or {}


class LocalCacheFullError(StorageBackendError):
    """The local cache is at capacity even after purging expired entries."""


__all__ = ["StorageBackendError", "LocalCacheFullError"]
