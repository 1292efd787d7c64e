from __future__ import annotations

from typing import Any, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator

from magiclink.logging import get_correlation_id

_VALID_ERROR_CODES = {
    "validation_error",
    "invalid_token",
    "unauthorized",
    "not_found",
    "method_not_allowed",
    "rate_limited",
    "server_error",
}


class ErrorBody(BaseModel):
    """Error envelope body with stable code values."""

    code: str = Field(..., description="Stable error code")
    message: str
    details: Optional[Any] = None  # object, array, or null

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class ErrorEnvelope(BaseModel):
    status: str = Field("error", pattern="^error$")
    error: ErrorBody
    request_id: str = Field(default_factory=lambda: get_correlation_id() or str(uuid4()))


class MagicLinkRequest(BaseModel):
    # Syntax is checked by the service so rejections share one code path
    email: str = Field(..., max_length=320)


class MessageResponse(BaseModel):
    message: str


class MeResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    email: str
    authenticated: bool = True
    login_time: str = Field(..., serialization_alias="loginTime")


class HealthChecks(BaseModel):
    redis: str
    local_cache: dict


class HealthConfiguration(BaseModel):
    redis_configured: bool
    email_configured: bool
    base_url_configured: bool


class HealthResponse(BaseModel):
    status: str
    timestamp: str
    environment: str
    version: str
    checks: HealthChecks
    configuration: HealthConfiguration
