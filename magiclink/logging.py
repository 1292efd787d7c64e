"""Structured logging for the magic link service.

Every event goes through structlog with a timestamp, the level, the request's
correlation id and a redaction pass that masks addresses, link tokens, session
ids and credentials by field name. Output is JSON unless ``LOG_JSON`` is off
or ``LOG_DEV_MODE`` is on. Configuration happens once, at import.
"""
from __future__ import annotations

import logging
import os
import uuid
from contextvars import ContextVar
from typing import Any, Dict, List, Optional

import structlog

EventDict = Dict[str, Any]

_request_id: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)

# Substrings of field names whose string values are masked
_PII_KEYS = {"password", "secret", "token", "authorization", "email", "cookie", "session_id"}


def get_correlation_id() -> Optional[str]:
    return _request_id.get()


def set_correlation_id(correlation_id: Optional[str] = None) -> str:
    """Bind the request id for this context, minting a UUID4 when none is given."""
    cid = correlation_id or str(uuid.uuid4())
    _request_id.set(cid)
    return cid


def _add_correlation_id(logger: Any, method_name: str, event_dict: EventDict) -> EventDict:
    cid = _request_id.get()
    if cid:
        event_dict["correlation_id"] = cid
    return event_dict


def _mask(value: str) -> str:
    return f"{value[:2]}***{value[-2:]}"


def _redact_pii(logger: Any, method_name: str, event_dict: EventDict) -> EventDict:
    """Mask sensitive string fields, leaving two characters at each end.

    Values of four characters or fewer are left alone. Token fingerprints are
    logged as ``link_id`` so they stay readable.
    """
    for key, value in list(event_dict.items()):
        if not isinstance(value, str) or len(value) <= 4:
            continue
        name = key.lower()
        if any(marker in name for marker in _PII_KEYS):
            event_dict[key] = _mask(value)
    return event_dict


def _env_flag(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() in {"1", "true", "yes", "on"}


def configure_logging(level: str = "INFO", *, json_output: bool = True, dev_mode: bool = False) -> None:
    processors: List[Any] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        _add_correlation_id,
        _redact_pii,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]
    if json_output and not dev_mode:
        processors += [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=dev_mode))

    threshold = getattr(logging, level.upper(), logging.INFO)
    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(threshold),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


configure_logging(
    os.getenv("LOG_LEVEL", "INFO"),
    json_output=_env_flag("LOG_JSON", "true"),
    dev_mode=_env_flag("LOG_DEV_MODE", "false"),
)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)


def redact_email(email: str) -> str:
    """Mask the local part of an address, e.g. ``al***@example.com``.

    For fields such as ``to`` that the name-based redaction does not cover.
    """
    if "@" not in email:
        return "redacted"
    local, domain = email.split("@", 1)
    return f"{local[:2]}***@{domain}"
