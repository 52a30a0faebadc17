from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import httpx

from tokenwarden.logging import get_logger, sanitize_error_message

logger = get_logger(__name__)

USER_AGENT = "tokenwarden/1.0"


@dataclass
class IdentityVerification:
    verified: bool
    subject_id: Optional[str] = None
    trust_level: Optional[int] = None
    user_type: Optional[str] = None
    permissions: List[str] = field(default_factory=list)
    roles: List[str] = field(default_factory=list)
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "verified": self.verified,
            "subject_id": self.subject_id,
            "trust_level": self.trust_level,
            "user_type": self.user_type,
            "permissions": list(self.permissions),
            "roles": list(self.roles),
            "error": self.error,
        }


class IdentityVerifier:
    """Client for the external identity service.

    The service asserts that a subject is real (``/v1/identity/verify``) and
    returns its permission set (``/v1/identity/permissions``). Network and
    HTTP failures are reported as ``verified=False`` rather than raised: an
    unverifiable identity is simply not allowed to provision.
    """

    def __init__(
        self,
        base_url: str,
        *,
        api_key: Optional[str] = None,
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.timeout = timeout
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    @property
    def is_configured(self) -> bool:
        return bool(self.api_key)

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            headers = {"User-Agent": USER_AGENT, "Content-Type": "application/json"}
            if self.api_key:
                headers["Authorization"] = f"Bearer {self.api_key}"
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                timeout=httpx.Timeout(self.timeout, connect=min(self.timeout, 5.0)),
                headers=headers,
                transport=self._transport,
                follow_redirects=False,
            )
        return self._client

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def verify(self, subject_id: str) -> IdentityVerification:
        """Verify the subject and fetch its permissions."""
        client = self._get_client()
        try:
            response = await client.post("/v1/identity/verify", json={"subject_id": subject_id})
            response.raise_for_status()
            data = response.json()
        except httpx.HTTPStatusError as exc:
            logger.warning(
                "identity_verify_rejected",
                subject_id=subject_id,
                status_code=exc.response.status_code,
            )
            return IdentityVerification(
                verified=False,
                subject_id=subject_id,
                error=f"identity verification failed: {exc.response.status_code}",
            )
        except httpx.TimeoutException:
            logger.error("identity_verify_timeout", subject_id=subject_id, base_url=self.base_url)
            return IdentityVerification(
                verified=False, subject_id=subject_id, error="identity service timed out"
            )
        except (httpx.HTTPError, ValueError) as exc:
            logger.error(
                "identity_verify_error",
                subject_id=subject_id,
                error_type=type(exc).__name__,
                error=sanitize_error_message(str(exc)),
            )
            return IdentityVerification(
                verified=False, subject_id=subject_id, error="identity service unavailable"
            )

        if not isinstance(data, dict) or not data.get("verified"):
            return IdentityVerification(
                verified=False,
                subject_id=subject_id,
                error=(data.get("error") if isinstance(data, dict) else None)
                or "identity not verified",
            )

        permissions, roles = await self.permissions(subject_id)
        logger.info(
            "identity_verified",
            subject_id=subject_id,
            trust_level=data.get("trust_level"),
            permission_count=len(permissions),
        )
        return IdentityVerification(
            verified=True,
            subject_id=data.get("subject_id") or subject_id,
            trust_level=data.get("trust_level"),
            user_type=data.get("user_type"),
            permissions=permissions,
            roles=roles,
        )

    async def permissions(self, subject_id: str) -> tuple[List[str], List[str]]:
        """Return ``(permissions, roles)``; empty on any failure."""
        client = self._get_client()
        try:
            response = await client.post(
                "/v1/identity/permissions", json={"subject_id": subject_id}
            )
            response.raise_for_status()
            data = response.json()
        except (httpx.HTTPError, ValueError) as exc:
            logger.warning(
                "identity_permissions_error",
                subject_id=subject_id,
                error_type=type(exc).__name__,
            )
            return [], []
        if not isinstance(data, dict):
            return [], []
        permissions = [str(p) for p in data.get("permissions") or []]
        roles = [str(r) for r in data.get("roles") or []]
        return permissions, roles

    async def health_check(self) -> bool:
        client = self._get_client()
        try:
            response = await client.get("/health")
        except httpx.HTTPError as exc:
            logger.warning("identity_health_check_failed", error_type=type(exc).__name__)
            return False
        return response.is_success
