from __future__ import annotations

import json
import secrets
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

from magiclink.logging import get_logger
from magiclink.service.errors import BackendUnavailableError
from magiclink.storage.errors import StorageBackendError
from magiclink.storage.fallback import FallbackCache

logger = get_logger(__name__)

SESSION_KEY_PREFIX = "session:"
DEFAULT_SESSION_TTL_SECONDS = 7 * 24 * 60 * 60


@dataclass
class Session:
    id: str
    email: str
    login_time: datetime

    def to_json(self) -> str:
        return json.dumps({"email": self.email, "login_time": self.login_time.isoformat()})

    @classmethod
    def from_json(cls, session_id: str, raw: str) -> Optional["Session"]:
        try:
            data = json.loads(raw)
            return cls(
                id=session_id,
                email=data["email"],
                login_time=datetime.fromisoformat(data["login_time"]),
            )
        except (json.JSONDecodeError, KeyError, TypeError, ValueError):
            # Corrupted entry - treat as no session
            return None


class SessionManager:
    """Server-side sessions keyed by an opaque cookie value.

    Expiry slides: every successful ``resolve`` resets the entry's TTL in
    place. The refresh only extends a key that still exists, so a lookup that
    overlaps a logout cannot bring the session back.
    """

    def __init__(
        self, cache: FallbackCache, *, ttl_seconds: int = DEFAULT_SESSION_TTL_SECONDS
    ) -> None:
        self.cache = cache
        self.ttl_seconds = ttl_seconds

    @staticmethod
    def _key(session_id: str) -> str:
        return f"{SESSION_KEY_PREFIX}{session_id}"

    async def establish(self, email: str) -> Session:
        session = Session(
            id=secrets.token_urlsafe(32),
            email=email,
            login_time=datetime.now(timezone.utc),
        )
        try:
            await self.cache.put(self._key(session.id), session.to_json(), self.ttl_seconds)
        except StorageBackendError as exc:
            logger.error("session_establish_failed", backend=exc.backend, error=exc.message)
            raise BackendUnavailableError("Unable to sign in right now. Please try again later.") from exc
        logger.info("session_established", email=email)
        return session

    async def resolve(self, session_id: Optional[str]) -> Optional[Session]:
        if not session_id or len(session_id) > 128:
            return None
        try:
            raw = await self.cache.get(self._key(session_id))
        except StorageBackendError as exc:
            logger.error("session_lookup_failed", backend=exc.backend, error=exc.message)
            return None
        if raw is None:
            return None
        session = Session.from_json(session_id, raw)
        if session is None:
            return None
        try:
            if not await self.cache.touch(self._key(session_id), self.ttl_seconds):
                # Terminated between the read and the refresh
                return None
        except StorageBackendError as exc:
            logger.warning("session_refresh_failed", backend=exc.backend, error=exc.message)
        return session

    async def terminate(self, session_id: str) -> None:
        try:
            await self.cache.delete(self._key(session_id))
        except StorageBackendError as exc:
            logger.error("session_terminate_failed", backend=exc.backend, error=exc.message)
            raise BackendUnavailableError("Unable to sign out right now. Please try again later.") from exc
        logger.info("session_terminated")
