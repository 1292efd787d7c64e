from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each subclass carries an HTTP ``status_code`` and a stable ``error_code``:
    - validation_error (400)
    - invalid_token (400, redirected by the callback route)
    - unauthorized (401)
    - rate_limited (429)
    - server_error (500)

    Messages are written for end users and never name the failing component.
    """

    status_code: int = 400
    error_code: str = "validation_error"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


class ValidationError(ServiceError):
    """Malformed input such as an invalid email address (400)."""
    status_code = 400
    error_code = "validation_error"


class InvalidTokenError(ServiceError):
    """Token unknown, expired or already used; the cases are not distinguished."""
    status_code = 400
    error_code = "invalid_token"


class AuthenticationError(ServiceError):
    """No valid session (401)."""
    status_code = 401
    error_code = "unauthorized"


class ThrottledError(ServiceError):
    """Rate limit flag present for the caller's IP or the target address (429)."""
    status_code = 429
    error_code = "rate_limited"


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


class BackendUnavailableError(ServerError):
    """Neither the distributed nor the local cache accepted a write."""


class EmailDispatchError(ServerError):
    """The email transport reported a failure."""


__all__ = [
    "ServiceError",
    "ValidationError",
    "InvalidTokenError",
    "AuthenticationError",
    "ThrottledError",
    "ServerError",
    "BackendUnavailableError",
    "EmailDispatchError",
]
