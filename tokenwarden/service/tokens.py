"""Token lifecycle engine: provision, validate, refresh and revoke.

The engine owns no per-token state of its own. Every decision is re-derived
from the stores by token hash, so revocation and expiry take effect without
invalidating copies of the bearer string held elsewhere.
"""

from __future__ import annotations

import base64
import functools
import json
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Protocol, Sequence

from tokenwarden.config import Settings
from tokenwarden.logging import get_logger
from tokenwarden.service.audit import AuditLogger
from tokenwarden.service.codec import TokenCodec, prefix_for, strip_bearer
from tokenwarden.service.errors import InvalidRequestError, ServerError, StoreUnavailableError
from tokenwarden.service.lookup import TokenCache, TokenLookup
from tokenwarden.service.rate_limit import RateLimiter, RateLimitPolicy
from tokenwarden.service.scopes import Scope, has_scope, parse_scope, parse_scopes
from tokenwarden.service.signer import Signer
from tokenwarden.storage.errors import ConstraintViolation, StoreUnavailable
from tokenwarden.storage.models import (
    AuditEvent,
    AuditEventType,
    TokenRecord,
    TokenStats,
    random_id,
)

logger = get_logger(__name__)

REFRESHED_REASON = "refreshed"
DEFAULT_REVOCATION_REASON = "manual revocation"
SESSION_PREFIX = "sess_"
_MAX_PROVISION_ATTEMPTS = 3
# Ten years; keeps expiry arithmetic inside datetime's range
MAX_TOKEN_TTL_SECONDS = 10 * 365 * 24 * 60 * 60


class ValidationFailure(str, Enum):
    INVALID_FORMAT = "invalid_format"
    REVOKED = "revoked"
    NOT_FOUND = "not_found"
    EXPIRED = "expired"
    RATE_LIMITED = "rate_limited"


class TokenStore(Protocol):
    def insert_token(self, record: TokenRecord) -> None: ...

    def get_token(self, token_id: str) -> Optional[TokenRecord]: ...

    def get_token_by_hash(
        self, token_hash: str, *, include_revoked: bool = False
    ) -> Optional[TokenRecord]: ...

    def record_token_usage(self, token_hash: str, used_at: datetime) -> Optional[TokenRecord]: ...

    def revoke_token(self, token_id: str, revoked_at: datetime, reason: str) -> bool: ...

    def token_stats(self, now: Optional[datetime] = None) -> TokenStats: ...


@dataclass(frozen=True)
class EngineConfig:
    signing_key: str
    default_ttl_seconds: int = 30 * 24 * 60 * 60
    environment_prefix: str = "tw_dev_"
    revocation_grace_seconds: int = 90 * 24 * 60 * 60
    cache_max_ttl_seconds: int = 0
    service_session_ttl_seconds: int = 300

    @classmethod
    def from_settings(cls, settings: Settings) -> "EngineConfig":
        return cls(
            signing_key=settings.token_signing_key or "",
            default_ttl_seconds=settings.default_token_ttl_seconds,
            environment_prefix=prefix_for(settings.environment),
            revocation_grace_seconds=settings.revocation_grace_seconds,
            cache_max_ttl_seconds=settings.cache_max_ttl_seconds,
            service_session_ttl_seconds=settings.service_session_ttl_seconds,
        )


@dataclass
class ProvisionResult:
    token: str
    token_id: str
    subject_id: str
    scope: List[str]
    service_name: str
    expires_at: datetime
    rate_limit: RateLimitPolicy


@dataclass
class ValidationResult:
    valid: bool
    reason: Optional[ValidationFailure] = None
    token_id: Optional[str] = None
    subject_id: Optional[str] = None
    scope: List[str] = field(default_factory=list)
    service_name: Optional[str] = None
    expires_at: Optional[datetime] = None
    rate_limit_remaining: Optional[int] = None
    rate_limit_reset: Optional[int] = None


@dataclass
class RevocationResult:
    token_id: str
    revoked_at: Optional[datetime]
    reason: Optional[str]
    newly_revoked: bool = False


@dataclass
class RefreshResult:
    ok: bool
    reason: Optional[ValidationFailure] = None
    provisioned: Optional[ProvisionResult] = None
    previous_token_id: Optional[str] = None


@dataclass
class ServiceSession:
    session_token: str
    service_name: str
    target_service: str
    action: str
    expires_at: datetime


def _surface_store_outages(func):
    """Re-raise storage outages as the 503-mapped service error."""

    @functools.wraps(func)
    async def wrapper(*args, **kwargs):
        try:
            return await func(*args, **kwargs)
        except StoreUnavailable as exc:
            logger.error("store_unavailable", operation=func.__name__, store=exc.store)
            raise StoreUnavailableError(
                str(exc), detail={"store": exc.store}
            ) from exc

    return wrapper


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _check_ttl(ttl_seconds: Any) -> None:
    if ttl_seconds is None:
        return
    if (
        isinstance(ttl_seconds, bool)
        or not isinstance(ttl_seconds, int)
        or not 0 < ttl_seconds <= MAX_TOKEN_TTL_SECONDS
    ):
        raise InvalidRequestError(
            f"ttl_seconds must be an integer between 1 and {MAX_TOKEN_TTL_SECONDS}",
            detail={"field": "ttl_seconds", "max": MAX_TOKEN_TTL_SECONDS},
        )


def _held_scopes(values: Sequence[str]) -> List[Scope]:
    held: List[Scope] = []
    for value in values:
        try:
            held.append(parse_scope(value))
        except ValueError:
            logger.warning("stored_scope_unparseable", scope=value)
    return held


class TokenLifecycleEngine:
    def __init__(
        self,
        config: EngineConfig,
        store: TokenStore,
        cache: Optional[TokenCache],
        rate_limiter: RateLimiter,
        audit: AuditLogger,
        *,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        if config.default_ttl_seconds <= 0:
            raise ValueError("default_ttl_seconds must be positive")
        self.config = config
        self.signer = Signer(config.signing_key)
        self.codec = TokenCodec(self.signer, config.environment_prefix)
        self.store = store
        self.cache = cache
        self.lookup = TokenLookup(
            store,
            cache,
            revocation_grace_seconds=config.revocation_grace_seconds,
            cache_max_ttl_seconds=config.cache_max_ttl_seconds,
        )
        self.rate_limiter = rate_limiter
        self.audit = audit
        self._clock = clock

    # -- provision -----------------------------------------------------------

    @_surface_store_outages
    async def provision(
        self,
        subject_id: str,
        scope: Sequence[str],
        service_name: str,
        ttl_seconds: Optional[int] = None,
    ) -> ProvisionResult:
        scopes = self._check_provision_request(subject_id, scope, service_name, ttl_seconds)
        ttl = self.config.default_ttl_seconds if ttl_seconds is None else ttl_seconds
        scope_values = [str(item) for item in scopes]

        record: Optional[TokenRecord] = None
        token = ""
        for attempt in range(1, _MAX_PROVISION_ATTEMPTS + 1):
            now = self._clock()
            token_id = random_id("tok_")
            token = self.codec.encode(
                token_id, subject_id, service_name, int(now.timestamp() * 1000)
            )
            candidate = TokenRecord(
                id=token_id,
                token_hash=self.signer.hash_token(token),
                subject_id=subject_id,
                scope=scope_values,
                created_at=now,
                expires_at=now + timedelta(seconds=ttl),
                service_name=service_name,
            )
            try:
                self.store.insert_token(candidate)
            except ConstraintViolation:
                logger.warning("token_id_collision", attempt=attempt)
                continue
            record = candidate
            break
        if record is None:
            raise ServerError("could not allocate a unique token id")

        await self.lookup.remember(record, record.created_at)
        await self.audit.emit(
            AuditEvent(
                event_type=AuditEventType.TOKEN_PROVISION,
                success=True,
                token_id=record.id,
                subject_id=subject_id,
                service_name=service_name,
                meta={"scope": scope_values, "expires_at": record.expires_at.isoformat()},
            )
        )
        logger.info(
            "token_provisioned",
            token_id=record.id,
            subject_id=subject_id,
            service_name=service_name,
            ttl_seconds=ttl,
        )
        return ProvisionResult(
            token=token,
            token_id=record.id,
            subject_id=subject_id,
            scope=list(scope_values),
            service_name=service_name,
            expires_at=record.expires_at,
            rate_limit=self.rate_limiter.policy_for(scopes),
        )

    def _check_provision_request(
        self,
        subject_id: Any,
        scope: Any,
        service_name: Any,
        ttl_seconds: Any,
    ) -> List[Scope]:
        if not isinstance(subject_id, str) or not subject_id.strip():
            raise InvalidRequestError("subject_id is required", detail={"field": "subject_id"})
        if not isinstance(service_name, str) or not service_name.strip():
            raise InvalidRequestError(
                "service_name is required", detail={"field": "service_name"}
            )
        if isinstance(scope, str) or not scope:
            raise InvalidRequestError(
                "scope must be a non-empty list", detail={"field": "scope"}
            )
        _check_ttl(ttl_seconds)
        try:
            return parse_scopes(scope)
        except ValueError as exc:
            raise InvalidRequestError(str(exc), detail={"field": "scope"}) from exc

    # -- validate ------------------------------------------------------------

    @_surface_store_outages
    async def validate(self, raw_token: Optional[str]) -> ValidationResult:
        token = strip_bearer(raw_token)
        if not self.codec.looks_well_formed(token):
            return await self._reject(ValidationFailure.INVALID_FORMAT)

        token_hash = self.signer.hash_token(token)
        now = self._clock()
        found = await self.lookup.find(token_hash, now)
        if found.revoked:
            return await self._reject(ValidationFailure.REVOKED, found.record, token_id=found.token_id)
        if found.record is None:
            return await self._reject(ValidationFailure.NOT_FOUND)
        if found.record.expires_at <= now:
            return await self._reject(ValidationFailure.EXPIRED, found.record)

        record = self.store.record_token_usage(token_hash, now)
        if record is None:
            # The cached copy outlived a revocation the marker never recorded
            current = self.store.get_token_by_hash(token_hash, include_revoked=True)
            if current is not None and current.revoked_at is not None:
                await self.lookup.remember_revocation(current)
                return await self._reject(ValidationFailure.REVOKED, current)
            await self.lookup.forget(token_hash)
            return await self._reject(ValidationFailure.NOT_FOUND, found.record)
        await self.lookup.remember(record, now)

        decision = await self.rate_limiter.check_and_increment(
            token_hash, _held_scopes(record.scope)
        )
        if not decision.allowed:
            return await self._reject(
                ValidationFailure.RATE_LIMITED,
                record,
                rate_limit_remaining=0,
                rate_limit_reset=decision.reset_seconds,
            )

        await self.audit.emit(
            AuditEvent(
                event_type=AuditEventType.TOKEN_VALIDATED,
                success=True,
                token_id=record.id,
                subject_id=record.subject_id,
                service_name=record.service_name,
                meta={"source": found.source.value if found.source else None},
            )
        )
        return ValidationResult(
            valid=True,
            token_id=record.id,
            subject_id=record.subject_id,
            scope=list(record.scope),
            service_name=record.service_name,
            expires_at=record.expires_at,
            rate_limit_remaining=decision.remaining,
            rate_limit_reset=decision.reset_seconds,
        )

    async def _reject(
        self,
        reason: ValidationFailure,
        record: Optional[TokenRecord] = None,
        *,
        token_id: Optional[str] = None,
        rate_limit_remaining: Optional[int] = None,
        rate_limit_reset: Optional[int] = None,
    ) -> ValidationResult:
        token_id = record.id if record is not None else token_id
        await self.audit.emit(
            AuditEvent(
                event_type=AuditEventType.TOKEN_VALIDATION_FAILED,
                success=False,
                token_id=token_id,
                subject_id=record.subject_id if record else None,
                service_name=record.service_name if record else None,
                error_message=reason.value,
            )
        )
        logger.info("token_validation_failed", reason=reason.value, token_id=token_id)
        return ValidationResult(
            valid=False,
            reason=reason,
            token_id=token_id,
            rate_limit_remaining=rate_limit_remaining,
            rate_limit_reset=rate_limit_reset,
        )

    # -- refresh -------------------------------------------------------------

    @_surface_store_outages
    async def refresh(
        self, raw_token: Optional[str], ttl_seconds: Optional[int] = None
    ) -> RefreshResult:
        _check_ttl(ttl_seconds)
        current = await self.validate(raw_token)
        if not current.valid:
            return RefreshResult(ok=False, reason=current.reason, previous_token_id=current.token_id)
        if current.token_id is None or current.subject_id is None:
            raise ServerError("validated token is missing its identity")

        # Only the caller whose revoke flipped the record may issue the replacement
        revocation = await self.revoke(current.token_id, REFRESHED_REASON)
        if not revocation.newly_revoked:
            logger.info("token_refresh_lost_race", token_id=current.token_id)
            return RefreshResult(
                ok=False,
                reason=ValidationFailure.REVOKED,
                previous_token_id=current.token_id,
            )
        provisioned = await self.provision(
            current.subject_id,
            current.scope,
            current.service_name or "",
            ttl_seconds,
        )
        await self.audit.emit(
            AuditEvent(
                event_type=AuditEventType.TOKEN_REFRESHED,
                success=True,
                token_id=current.token_id,
                subject_id=current.subject_id,
                service_name=current.service_name,
                meta={"new_token_id": provisioned.token_id},
            )
        )
        logger.info(
            "token_refreshed",
            token_id=current.token_id,
            new_token_id=provisioned.token_id,
        )
        return RefreshResult(
            ok=True, provisioned=provisioned, previous_token_id=current.token_id
        )

    # -- revoke --------------------------------------------------------------

    @_surface_store_outages
    async def revoke(
        self, token_id: str, reason: Optional[str] = None
    ) -> RevocationResult:
        if not isinstance(token_id, str) or not token_id.strip():
            raise InvalidRequestError("token_id is required", detail={"field": "token_id"})
        reason = (reason or "").strip() or DEFAULT_REVOCATION_REASON
        now = self._clock()

        newly_revoked = self.store.revoke_token(token_id, now, reason)
        record = self.store.get_token(token_id)
        if record is None:
            await self.audit.emit(
                AuditEvent(
                    event_type=AuditEventType.TOKEN_REVOKED,
                    success=True,
                    token_id=token_id,
                    meta={"reason": reason, "known": False},
                )
            )
            logger.info("token_revoke_unknown", token_id=token_id)
            return RevocationResult(token_id=token_id, revoked_at=None, reason=None)

        await self.lookup.remember_revocation(record)
        await self.audit.emit(
            AuditEvent(
                event_type=AuditEventType.TOKEN_REVOKED,
                success=True,
                token_id=record.id,
                subject_id=record.subject_id,
                service_name=record.service_name,
                meta={
                    "reason": record.revocation_reason,
                    "already_revoked": not newly_revoked,
                },
            )
        )
        logger.info(
            "token_revoked",
            token_id=record.id,
            reason=record.revocation_reason,
            already_revoked=not newly_revoked,
        )
        return RevocationResult(
            token_id=record.id,
            revoked_at=record.revoked_at,
            reason=record.revocation_reason,
            newly_revoked=newly_revoked,
        )

    # -- stats ---------------------------------------------------------------

    @_surface_store_outages
    async def stats(self) -> TokenStats:
        return self.store.token_stats(self._clock())

    # -- service sessions ----------------------------------------------------

    def mint_service_session(
        self, validation: ValidationResult, target_service: str, action: str
    ) -> Optional[ServiceSession]:
        """Issue a short-lived session for a validated service token.

        Returns None when the token's scope does not grant
        ``target_service:action``. The session is a signed claim set, not a
        stored token; it cannot be revoked and lives only for
        ``service_session_ttl_seconds``.
        """
        if not validation.valid or not validation.token_id:
            raise InvalidRequestError("a valid service token is required")
        try:
            required = parse_scope(f"{target_service}:{action}")
        except ValueError as exc:
            raise InvalidRequestError(str(exc), detail={"field": "target_service"}) from exc
        if not has_scope(_held_scopes(validation.scope), required):
            logger.info(
                "service_session_denied",
                token_id=validation.token_id,
                required=str(required),
            )
            return None

        now = self._clock()
        expires_at = now + timedelta(seconds=self.config.service_session_ttl_seconds)
        service_name = validation.service_name or validation.subject_id or ""
        claims: Dict[str, Any] = {
            "sub": validation.subject_id,
            "svc": service_name,
            "target": required.resource,
            "action": required.action,
            "tid": validation.token_id,
            "iat": int(now.timestamp()),
            "exp": int(expires_at.timestamp()),
        }
        body = base64.urlsafe_b64encode(
            json.dumps(claims, separators=(",", ":"), sort_keys=True).encode()
        ).rstrip(b"=").decode()
        signature = self.signer.sign(f"{SESSION_PREFIX}{body}".encode())
        logger.info(
            "service_session_issued",
            token_id=validation.token_id,
            target_service=required.resource,
            action=required.action,
        )
        return ServiceSession(
            session_token=f"{SESSION_PREFIX}{body}.{signature}",
            service_name=service_name,
            target_service=required.resource,
            action=required.action,
            expires_at=expires_at,
        )
