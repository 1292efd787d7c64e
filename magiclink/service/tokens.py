from __future__ import annotations

import hashlib
import re
import secrets
from typing import Optional

from magiclink.logging import get_logger
from magiclink.service.errors import BackendUnavailableError
from magiclink.storage.errors import StorageBackendError
from magiclink.storage.fallback import FallbackCache

logger = get_logger(__name__)

TOKEN_BYTES = 32
TOKEN_KEY_PREFIX = "token:"
DEFAULT_TOKEN_TTL_SECONDS = 15 * 60

_TOKEN_PATTERN = re.compile(r"^[0-9a-f]{%d}$" % (TOKEN_BYTES * 2))


def _token_fingerprint(token: str) -> str:
    """Short, non-reversible handle for correlating a token across log lines."""
    return hashlib.sha256(token.encode()).hexdigest()[:12]


class TokenStore:
    """Issues single-use magic link tokens and consumes them exactly once.

    A token is 256 bits from the OS CSPRNG, hex encoded, stored as
    ``token:<token> -> email`` with a fixed TTL. Redemption is an atomic
    get-and-delete, so a token validates at most once per backend.
    """

    def __init__(
        self, cache: FallbackCache, *, ttl_seconds: int = DEFAULT_TOKEN_TTL_SECONDS
    ) -> None:
        self.cache = cache
        self.ttl_seconds = ttl_seconds

    @staticmethod
    def _key(token: str) -> str:
        return f"{TOKEN_KEY_PREFIX}{token}"

    @staticmethod
    def generate_token() -> str:
        return secrets.token_hex(TOKEN_BYTES)

    async def issue(self, email: str) -> str:
        """Bind a fresh token to ``email``.

        Raises:
            BackendUnavailableError: neither the distributed nor the local cache
                accepted the write.
        """
        token = self.generate_token()
        try:
            backend = await self.cache.put(self._key(token), email, self.ttl_seconds)
        except StorageBackendError as exc:
            logger.error(
                "token_issue_failed",
                backend=exc.backend,
                error=exc.message,
            )
            raise BackendUnavailableError(
                "Unable to create a sign-in link right now. Please try again later."
            ) from exc
        logger.info(
            "token_issued",
            link_id=_token_fingerprint(token),
            backend=backend,
            ttl_seconds=self.ttl_seconds,
        )
        return token

    async def redeem(self, token: Optional[str]) -> Optional[str]:
        """Consume ``token`` and return its email, or ``None``.

        ``None`` covers never issued, expired, already used and malformed
        tokens alike. Storage failures also end in ``None``; nothing is raised.
        """
        if not token or not _TOKEN_PATTERN.match(token):
            logger.info("token_rejected_malformed")
            return None
        try:
            email = await self.cache.pop(self._key(token))
        except StorageBackendError as exc:
            logger.error(
                "token_redeem_storage_failed",
                link_id=_token_fingerprint(token),
                backend=exc.backend,
                error=exc.message,
            )
            return None
        if email is None:
            logger.info("token_redeem_miss", link_id=_token_fingerprint(token))
            return None
        logger.info("token_redeemed", link_id=_token_fingerprint(token))
        return email
