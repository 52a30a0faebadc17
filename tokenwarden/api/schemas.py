from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator

# Upper bounds on request fields; tokens are ~100 characters in practice.
MAX_TOKEN_LENGTH = 2048
MAX_IDENTIFIER_LENGTH = 256
MAX_SCOPES = 64
MAX_TTL_SECONDS = 10 * 365 * 24 * 60 * 60

_VALID_ERROR_CODES = frozenset({
    "unauthorized",
    "forbidden",
    "not_found",
    "rate_limited",
    "validation_error",
    "conflict",
    "server_error",
    "store_unavailable",
    # validation negatives surfaced as-is
    "invalid_format",
    "revoked",
    "expired",
})


class ErrorBody(BaseModel):
    """Error envelope body with stable code values."""

    code: str
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


class Envelope(BaseModel):
    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


class RateLimitPolicyResponse(BaseModel):
    tier: str
    requests: int
    window_seconds: int


class ProvisionRequest(BaseModel):
    subject_id: str = Field(..., max_length=MAX_IDENTIFIER_LENGTH)
    scope: List[str] = Field(..., max_length=MAX_SCOPES)
    service_name: str = Field(..., max_length=MAX_IDENTIFIER_LENGTH)
    ttl_seconds: Optional[int] = Field(default=None, gt=0, le=MAX_TTL_SECONDS)


class ProvisionResponse(BaseModel):
    token: str
    token_id: str
    subject_id: str
    scope: List[str]
    service_name: str
    expires_at: datetime
    rate_limit: RateLimitPolicyResponse


class ValidateRequest(BaseModel):
    token: Optional[str] = Field(default=None, max_length=MAX_TOKEN_LENGTH)


class ValidateResponse(BaseModel):
    valid: bool
    token_id: str
    subject_id: str
    scope: List[str]
    service_name: Optional[str] = None
    expires_at: datetime
    rate_limit_remaining: int
    rate_limit_reset: Optional[int] = None


class RefreshRequest(BaseModel):
    token: str = Field(..., max_length=MAX_TOKEN_LENGTH)
    ttl_seconds: Optional[int] = Field(default=None, gt=0, le=MAX_TTL_SECONDS)


class RefreshResponse(ProvisionResponse):
    previous_token_id: str


class RevokeRequest(BaseModel):
    token_id: str = Field(..., min_length=1, max_length=MAX_IDENTIFIER_LENGTH)
    reason: Optional[str] = Field(default=None, max_length=512)


class RevokeResponse(BaseModel):
    token_id: str
    revoked_at: Optional[datetime] = None
    reason: Optional[str] = None


class StatsResponse(BaseModel):
    total_tokens: int
    active_tokens: int
    revoked_tokens: int
    expired_tokens: int
    requests_24h: int
    timestamp: datetime


class ServiceAuthRequest(BaseModel):
    service_token: str = Field(..., max_length=MAX_TOKEN_LENGTH)
    target_service: str = Field(..., min_length=1, max_length=MAX_IDENTIFIER_LENGTH)
    action: str = Field(..., min_length=1, max_length=MAX_IDENTIFIER_LENGTH)


class ServiceAuthResponse(BaseModel):
    authorized: bool
    service_name: str
    permissions: List[str]
    session_token: str
    expires_in: int
    expires_at: datetime


class ConnectVerifyRequest(BaseModel):
    subject_id: str = Field(..., min_length=1, max_length=MAX_IDENTIFIER_LENGTH)


class IdentityVerificationResponse(BaseModel):
    verified: bool
    subject_id: Optional[str] = None
    trust_level: Optional[int] = None
    user_type: Optional[str] = None
    permissions: List[str] = Field(default_factory=list)
    roles: List[str] = Field(default_factory=list)
    error: Optional[str] = None


class HealthResponse(BaseModel):
    status: str
    version: str
    timestamp: datetime
    dependencies: Dict[str, str]
    audit: Dict[str, Any]
