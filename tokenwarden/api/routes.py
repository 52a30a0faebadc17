from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional

from fastapi import APIRouter, Header

from tokenwarden.api.schemas import (
    ConnectVerifyRequest,
    Envelope,
    IdentityVerificationResponse,
    ProvisionRequest,
    ProvisionResponse,
    RateLimitPolicyResponse,
    RefreshRequest,
    RefreshResponse,
    RevokeRequest,
    RevokeResponse,
    ServiceAuthRequest,
    ServiceAuthResponse,
    StatsResponse,
    ValidateRequest,
    ValidateResponse,
)
from tokenwarden.logging import get_logger
from tokenwarden.service.errors import (
    AuthenticationError,
    ForbiddenError,
    InvalidRequestError,
    RateLimitedError,
    ServiceError,
)
from tokenwarden.service.runtime import get_runtime
from tokenwarden.service.scopes import ADMIN_WILDCARD, authorize_scopes
from tokenwarden.service.tokens import (
    ProvisionResult,
    ValidationFailure,
    ValidationResult,
)

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")


def _rejection(result: ValidationResult) -> ServiceError:
    """Map a negative validation result onto 401 or 429."""
    reason = result.reason or ValidationFailure.INVALID_FORMAT
    if reason == ValidationFailure.RATE_LIMITED:
        return RateLimitedError(
            "rate limit exceeded",
            detail={"reason": reason.value, "retry_after": result.rate_limit_reset},
        )
    return AuthenticationError(
        "token rejected", error_code=reason.value, detail={"reason": reason.value}
    )


def _provision_payload(result: ProvisionResult) -> dict:
    return dict(
        token=result.token,
        token_id=result.token_id,
        subject_id=result.subject_id,
        scope=result.scope,
        service_name=result.service_name,
        expires_at=result.expires_at,
        rate_limit=RateLimitPolicyResponse(**result.rate_limit.to_dict()),
    )


@router.post("/tokens/provision", response_model=Envelope, status_code=201, tags=["tokens"])
async def provision_token(body: ProvisionRequest):
    """Provision a token for a verified identity.

    The identity service must verify the subject; requested scopes are then
    narrowed to those its permissions allow.

    Raises:
        403: Identity not verified, or no requested scope is authorized
    """
    runtime = get_runtime()
    verification = await runtime.identity.verify(body.subject_id)
    if not verification.verified:
        raise ForbiddenError(
            "identity verification failed", detail={"error": verification.error}
        )
    authorized = authorize_scopes(body.scope, verification.permissions)
    if not authorized:
        raise ForbiddenError(
            "no authorized scopes for this subject",
            detail={
                "requested_scopes": body.scope,
                "available_permissions": verification.permissions,
            },
        )
    result = await runtime.engine.provision(
        body.subject_id, authorized, body.service_name, body.ttl_seconds
    )
    return Envelope(status="ok", data=ProvisionResponse(**_provision_payload(result)))


@router.post("/tokens/validate", response_model=Envelope, tags=["tokens"])
async def validate_token(
    body: Optional[ValidateRequest] = None,
    authorization: Optional[str] = Header(None),
):
    """Validate a token passed in the body or as an ``Authorization`` header."""
    raw = (body.token if body else None) or authorization
    if not raw:
        raise InvalidRequestError("token is required", detail={"field": "token"})
    runtime = get_runtime()
    result = await runtime.engine.validate(raw)
    if not result.valid:
        raise _rejection(result)
    return Envelope(
        status="ok",
        data=ValidateResponse(
            valid=True,
            token_id=result.token_id,
            subject_id=result.subject_id,
            scope=result.scope,
            service_name=result.service_name,
            expires_at=result.expires_at,
            rate_limit_remaining=result.rate_limit_remaining,
            rate_limit_reset=result.rate_limit_reset,
        ),
    )


@router.post("/tokens/refresh", response_model=Envelope, tags=["tokens"])
async def refresh_token(body: RefreshRequest):
    runtime = get_runtime()
    result = await runtime.engine.refresh(body.token, body.ttl_seconds)
    if not result.ok or result.provisioned is None:
        raise _rejection(
            ValidationResult(valid=False, reason=result.reason, token_id=result.previous_token_id)
        )
    return Envelope(
        status="ok",
        data=RefreshResponse(
            **_provision_payload(result.provisioned),
            previous_token_id=result.previous_token_id,
        ),
    )


@router.post("/tokens/revoke", response_model=Envelope, tags=["tokens"])
async def revoke_token(body: RevokeRequest):
    """Revoke a token by id. Unknown or already revoked ids still succeed."""
    runtime = get_runtime()
    result = await runtime.engine.revoke(body.token_id, body.reason)
    return Envelope(
        status="ok",
        data=RevokeResponse(
            token_id=result.token_id,
            revoked_at=result.revoked_at,
            reason=result.reason,
        ),
    )


@router.get("/tokens/stats", response_model=Envelope, tags=["tokens"])
async def token_stats(authorization: Optional[str] = Header(None)):
    """Operator statistics; requires a token holding ``admin:*``."""
    if not authorization:
        raise AuthenticationError("authorization required")
    runtime = get_runtime()
    caller = await runtime.engine.validate(authorization)
    if not caller.valid:
        raise _rejection(caller)
    if str(ADMIN_WILDCARD) not in caller.scope:
        raise ForbiddenError("admin access required")
    stats = await runtime.engine.stats()
    return Envelope(
        status="ok",
        data=StatsResponse(
            total_tokens=stats.total_tokens,
            active_tokens=stats.active_tokens,
            revoked_tokens=stats.revoked_tokens,
            expired_tokens=stats.expired_tokens,
            requests_24h=stats.requests_24h,
            timestamp=datetime.now(timezone.utc),
        ),
    )


@router.post("/service/authenticate", response_model=Envelope, tags=["service"])
async def authenticate_service(body: ServiceAuthRequest):
    """Exchange a service token for a short-lived session on a target service."""
    runtime = get_runtime()
    validation = await runtime.engine.validate(body.service_token)
    if not validation.valid:
        raise _rejection(validation)
    session = runtime.engine.mint_service_session(
        validation, body.target_service, body.action
    )
    if session is None:
        raise ForbiddenError(
            "insufficient permissions",
            detail={
                "required": f"{body.target_service}:{body.action}",
                "available": validation.scope,
            },
        )
    return Envelope(
        status="ok",
        data=ServiceAuthResponse(
            authorized=True,
            service_name=session.service_name,
            permissions=validation.scope,
            session_token=session.session_token,
            expires_in=runtime.engine.config.service_session_ttl_seconds,
            expires_at=session.expires_at,
        ),
    )


@router.post("/connect/verify", response_model=Envelope, tags=["identity"])
async def verify_identity(body: ConnectVerifyRequest):
    runtime = get_runtime()
    verification = await runtime.identity.verify(body.subject_id)
    return Envelope(
        status="ok",
        data=IdentityVerificationResponse(**verification.to_dict()),
    )
