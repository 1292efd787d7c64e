from __future__ import annotations

import asyncio
from typing import Optional

from redis.exceptions import RedisError

from magiclink.config import Settings, get_settings, mask_url_password
from magiclink.logging import get_logger
from magiclink.service.email import EmailService
from magiclink.service.magic_link import MagicLinkService
from magiclink.service.rate_limit import RateLimiter
from magiclink.service.sessions import SessionManager
from magiclink.service.tokens import TokenStore
from magiclink.storage.base import CacheBackend
from magiclink.storage.fallback import FallbackCache
from magiclink.storage.memory import LocalCache
from magiclink.storage.redis_cache import RedisCache

logger = get_logger(__name__)


class Runtime:
    """Holds the service instances for one FastAPI app.

    The backend variant is chosen once here: a Redis client when a connection
    string is configured, the local cache alone otherwise. Tests pass their own
    ``local``/``distributed``/``email`` instances.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        *,
        local: Optional[LocalCache] = None,
        distributed: Optional[CacheBackend] = None,
        email: Optional[EmailService] = None,
    ) -> None:
        self.settings = settings or get_settings()
        logger.info(
            "runtime_init_started",
            environment=self.settings.environment,
            redis_configured=bool(self.settings.redis_url) or distributed is not None,
        )

        if local is None:
            local = LocalCache(max_entries=self.settings.local_cache_max_entries)
        self.local = local
        if distributed is None and self.settings.redis_url:
            distributed = RedisCache(
                self.settings.redis_url,
                operation_timeout=self.settings.redis_timeout_seconds,
            )
        self.distributed = distributed
        if distributed is None:
            logger.warning(
                "redis_disabled_fallback",
                error="redis_url_missing",
                message="Running without Redis; tokens, rate limits and sessions are local to this process.",
            )
        self.cache = FallbackCache(self.local, self.distributed)

        self.tokens = TokenStore(self.cache, ttl_seconds=self.settings.token_ttl_minutes * 60)
        self.rate_limiter = RateLimiter(
            self.cache, window_seconds=self.settings.rate_limit_window_seconds
        )
        self.sessions = SessionManager(
            self.cache, ttl_seconds=self.settings.session_ttl_days * 24 * 60 * 60
        )
        self.email = email or EmailService(
            smtp_host=self.settings.smtp_host,
            smtp_port=self.settings.smtp_port,
            smtp_user=self.settings.smtp_user,
            smtp_password=self.settings.smtp_password,
            smtp_use_tls=self.settings.smtp_use_tls,
            from_email=self.settings.email_from_address,
            from_name=self.settings.email_from_name,
            link_ttl_minutes=self.settings.token_ttl_minutes,
        )
        self.magic_links = MagicLinkService(
            tokens=self.tokens,
            rate_limiter=self.rate_limiter,
            sessions=self.sessions,
            email=self.email,
        )
        logger.info(
            "runtime_init_completed",
            backend="redis" if self.distributed is not None else "local",
            mail_transport="smtp" if self.email.is_configured else "dev_log",
        )

    async def verify_distributed(self) -> bool:
        """Ping Redis once at startup; failure is logged and the app stays up."""
        if not isinstance(self.distributed, RedisCache):
            return self.distributed is not None
        try:
            await asyncio.to_thread(self.distributed.verify_connection)
        except (RedisError, OSError) as exc:
            logger.warning(
                "redis_disabled_fallback",
                redis_url=mask_url_password(self.distributed.redis_url),
                error=str(exc),
                message="Redis unreachable at startup; serving from the local cache until it recovers.",
            )
            return False
        logger.info("redis_connected", redis_url=mask_url_password(self.distributed.redis_url))
        return True

    async def redis_status(self) -> str:
        if self.distributed is None:
            return "not_configured"
        return "connected" if await self.distributed.is_available() else "unavailable"

    def sweep_local(self) -> int:
        removed = self.local.purge_expired()
        if removed:
            logger.debug("local_cache_swept", removed=removed, remaining=len(self.local))
        return removed

    async def close(self) -> None:
        await self.cache.close()
        logger.info("runtime_closed")
