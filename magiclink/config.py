from __future__ import annotations

import os
from typing import Any
from urllib.parse import urlparse, urlunparse

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from magiclink.logging import get_logger

logger = get_logger(__name__)

# Alternative names platforms use for the Redis connection string, in lookup order
REDIS_URL_ALIASES = ("REDIS_CONNECTION_STRING", "REDIS_PRIVATE_URL")


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


def mask_url_password(url: str | None) -> str | None:
    """Mask the password component of a URL for safe logging.

    Example: redis://:mypassword@localhost:6379 -> redis://:***@localhost:6379
    """
    if not url:
        return url
    try:
        parsed = urlparse(url)
        if parsed.password:
            netloc = parsed.hostname or ""
            if parsed.port:
                netloc = f"{netloc}:{parsed.port}"
            if parsed.username:
                netloc = f"{parsed.username}:***@{netloc}"
            else:
                netloc = f":***@{netloc}"
            return urlunparse((
                parsed.scheme,
                netloc,
                parsed.path,
                parsed.params,
                parsed.query,
                parsed.fragment,
            ))
        return url
    except ValueError:
        return "***url_parse_error***"


class Settings(BaseModel):
    """Runtime settings for the magic link service."""

    redis_url: str | None = env_field(
        None,
        "REDIS_URL",
        description="Distributed cache connection string; unset runs on the local cache only",
    )
    redis_timeout_seconds: float = env_field(3.0, "REDIS_TIMEOUT_SECONDS")
    token_ttl_minutes: int = env_field(15, "TOKEN_TTL_MINUTES")
    rate_limit_window_seconds: int = env_field(60, "RATE_LIMIT_WINDOW_SECONDS")
    session_ttl_days: int = env_field(7, "SESSION_TTL_DAYS")
    session_cookie_name: str = env_field("MagicLinkAuth", "SESSION_COOKIE_NAME")
    cookie_secure: bool = env_field(True, "COOKIE_SECURE")
    local_cache_max_entries: int = env_field(100_000, "LOCAL_CACHE_MAX_ENTRIES")
    local_cache_sweep_seconds: int = env_field(300, "LOCAL_CACHE_SWEEP_SECONDS")
    app_base_url: str | None = env_field(
        None,
        "APP_BASE_URL",
        description="Public base URL for links; derived from the request when unset",
    )
    success_redirect: str = env_field("/success.html", "SUCCESS_REDIRECT")
    error_redirect: str = env_field("/error.html", "ERROR_REDIRECT")
    trust_forwarded_for: bool = env_field(
        False,
        "TRUST_FORWARDED_FOR",
        description="Use the first X-Forwarded-For hop as client IP (only behind a trusted proxy)",
    )
    smtp_host: str | None = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: str | None = env_field(None, "SMTP_USER")
    smtp_password: str | None = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS", description="STARTTLS; false uses implicit TLS")
    email_from_address: str | None = env_field(None, "EMAIL_FROM_ADDRESS")
    email_from_name: str = env_field("MagicLinkDemo", "EMAIL_FROM_NAME")
    environment: str = env_field("development", "APP_ENV")

    model_config = ConfigDict(extra="ignore")

    @classmethod
    def from_env(cls) -> "Settings":
        env_file_values = dotenv_values(".env")
        merged: dict[str, str] = {}
        for name, field in cls.model_fields.items():
            extra = field.json_schema_extra or {}
            env_key = extra.get("env") if isinstance(extra, dict) else None
            env_name = env_key or name.upper()
            if env_name in os.environ:
                merged[name] = os.environ[env_name]
            elif env_name in env_file_values:
                merged[name] = env_file_values[env_name]
        if "redis_url" not in merged:
            for alias in REDIS_URL_ALIASES:
                value = os.environ.get(alias) or env_file_values.get(alias)
                if value:
                    merged["redis_url"] = value
                    break
        return cls(**merged)

    @field_validator("redis_url")
    @classmethod
    def _normalize_redis_url(cls, value: str | None) -> str | None:
        if not value or not value.strip():
            return None
        value = value.strip()
        # Some hosting platforms hand out URLs with the port repeated
        if ":6379:6379" in value:
            value = value.replace(":6379:6379", ":6379")
            logger.warning("redis_url_duplicate_port_fixed", redis_url=mask_url_password(value))
        return value

    @field_validator("redis_timeout_seconds")
    @classmethod
    def _validate_redis_timeout(cls, value: float) -> float:
        if value <= 0 or value > 5:
            raise ValueError("redis_timeout_seconds must be in (0, 5]")
        return value

    @field_validator(
        "token_ttl_minutes",
        "rate_limit_window_seconds",
        "session_ttl_days",
        "local_cache_max_entries",
        "local_cache_sweep_seconds",
    )
    @classmethod
    def _validate_positive(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("must be a positive integer")
        return value

    @field_validator("app_base_url")
    @classmethod
    def _strip_base_url(cls, value: str | None) -> str | None:
        if not value:
            return None
        return value.rstrip("/")

    @property
    def email_configured(self) -> bool:
        return bool(self.smtp_host and (self.email_from_address or self.smtp_user))


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings.from_env()
    return _settings_cache


_settings_cache: Settings | None = None


def reset_settings_cache() -> None:
    """Clear cached settings so future calls re-read the environment."""

    global _settings_cache
    _settings_cache = None
