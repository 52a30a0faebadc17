from __future__ import annotations

import secrets
import string
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

_ID_ALPHABET = string.ascii_letters + string.digits


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def random_id(prefix: str, length: int = 20) -> str:
    """Opaque identifier such as ``tok_...`` or ``evt_...``."""
    return prefix + "".join(secrets.choice(_ID_ALPHABET) for _ in range(length))


class AuditEventType(str, Enum):
    TOKEN_PROVISION = "token_provision"
    TOKEN_VALIDATED = "token_validated"
    TOKEN_VALIDATION_FAILED = "token_validation_failed"
    TOKEN_REFRESHED = "token_refreshed"
    TOKEN_REVOKED = "token_revoked"


@dataclass
class TokenRecord:
    id: str
    token_hash: str
    subject_id: str
    scope: List[str]
    created_at: datetime
    expires_at: datetime
    service_name: Optional[str] = None
    last_used_at: Optional[datetime] = None
    request_count: int = 0
    revoked_at: Optional[datetime] = None
    revocation_reason: Optional[str] = None

    def is_active(self, now: Optional[datetime] = None) -> bool:
        now = now or _utcnow()
        return self.revoked_at is None and self.expires_at > now


@dataclass
class AuditEvent:
    event_type: AuditEventType
    success: bool
    id: str = field(default_factory=lambda: random_id("evt_"))
    token_id: Optional[str] = None
    subject_id: Optional[str] = None
    service_name: Optional[str] = None
    error_message: Optional[str] = None
    meta: Dict[str, Any] | None = None
    timestamp: datetime = field(default_factory=_utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "event_type": self.event_type.value,
            "token_id": self.token_id,
            "subject_id": self.subject_id,
            "service_name": self.service_name,
            "success": self.success,
            "error_message": self.error_message,
            "meta": self.meta,
            "timestamp": self.timestamp.isoformat(),
        }


@dataclass
class TokenStats:
    total_tokens: int = 0
    active_tokens: int = 0
    revoked_tokens: int = 0
    expired_tokens: int = 0
    requests_24h: int = 0
