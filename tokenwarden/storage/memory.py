from __future__ import annotations

import copy
import threading
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional

from tokenwarden.logging import get_logger
from tokenwarden.storage.errors import ConstraintViolation
from tokenwarden.storage.models import (
    AuditEvent,
    AuditEventType,
    TokenRecord,
    TokenStats,
)


class MemoryStore:
    """In-process durable store for tests and local development.

    Mirrors the PostgresStore contract: records are copied in and out so
    callers can never mutate stored state by accident.
    """

    def __init__(self) -> None:
        self.logger = get_logger(__name__)
        self.tokens: Dict[str, TokenRecord] = {}
        self._hash_index: Dict[str, str] = {}
        self.audit_events: List[AuditEvent] = []
        # RLock for all data operations to ensure thread safety
        self._data_lock = threading.RLock()

    def verify_connection(self) -> None:
        return None

    def insert_token(self, record: TokenRecord) -> None:
        with self._data_lock:
            if record.id in self.tokens:
                raise ConstraintViolation("token id already exists", {"token_id": record.id})
            if record.token_hash in self._hash_index:
                raise ConstraintViolation(
                    "token hash already exists", {"token_id": record.id}
                )
            self.tokens[record.id] = copy.deepcopy(record)
            self._hash_index[record.token_hash] = record.id

    def get_token(self, token_id: str) -> Optional[TokenRecord]:
        with self._data_lock:
            record = self.tokens.get(token_id)
            return copy.deepcopy(record) if record else None

    def get_token_hash(self, token_id: str) -> Optional[str]:
        with self._data_lock:
            record = self.tokens.get(token_id)
            return record.token_hash if record else None

    def get_token_by_hash(
        self, token_hash: str, *, include_revoked: bool = False
    ) -> Optional[TokenRecord]:
        with self._data_lock:
            token_id = self._hash_index.get(token_hash)
            if not token_id:
                return None
            record = self.tokens[token_id]
            if record.revoked_at is not None and not include_revoked:
                return None
            return copy.deepcopy(record)

    def record_token_usage(self, token_hash: str, used_at: datetime) -> Optional[TokenRecord]:
        """Count one use of an unrevoked token and return the updated record.

        Returns None when the hash is unknown or the token has been revoked.
        """
        with self._data_lock:
            token_id = self._hash_index.get(token_hash)
            if not token_id:
                return None
            record = self.tokens[token_id]
            if record.revoked_at is not None:
                return None
            record.request_count += 1
            if record.last_used_at is None or used_at > record.last_used_at:
                record.last_used_at = used_at
            return copy.deepcopy(record)

    def revoke_token(self, token_id: str, revoked_at: datetime, reason: str) -> bool:
        """Set revocation fields once. Returns True when this call revoked the token."""
        with self._data_lock:
            record = self.tokens.get(token_id)
            if not record or record.revoked_at is not None:
                return False
            record.revoked_at = revoked_at
            record.revocation_reason = reason
            return True

    def insert_audit_event(self, event: AuditEvent) -> None:
        with self._data_lock:
            if any(existing.id == event.id for existing in self.audit_events):
                raise ConstraintViolation("audit event already exists", {"event_id": event.id})
            self.audit_events.append(copy.deepcopy(event))

    def list_audit_events(
        self,
        *,
        token_id: Optional[str] = None,
        event_type: Optional[str] = None,
        limit: int = 100,
    ) -> List[AuditEvent]:
        wanted = AuditEventType(event_type) if event_type is not None else None
        with self._data_lock:
            events = [
                ev
                for ev in self.audit_events
                if (token_id is None or ev.token_id == token_id)
                and (wanted is None or ev.event_type == wanted)
            ]
        events.sort(key=lambda ev: ev.timestamp, reverse=True)
        return [copy.deepcopy(ev) for ev in events[:limit]]

    def token_stats(self, now: Optional[datetime] = None) -> TokenStats:
        now = now or datetime.now(timezone.utc)
        day_ago = now - timedelta(hours=24)
        stats = TokenStats()
        with self._data_lock:
            for record in self.tokens.values():
                stats.total_tokens += 1
                if record.revoked_at is None and record.expires_at > now:
                    stats.active_tokens += 1
                if record.revoked_at is not None:
                    stats.revoked_tokens += 1
                if record.expires_at <= now:
                    stats.expired_tokens += 1
                if record.last_used_at and record.last_used_at >= day_ago:
                    stats.requests_24h += record.request_count
        return stats
