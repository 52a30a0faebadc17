from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional, Protocol

from tokenwarden.logging import get_logger
from tokenwarden.storage.errors import StoreUnavailable
from tokenwarden.storage.models import TokenRecord

logger = get_logger(__name__)

_ENTRY_KEYS = frozenset({"token_id", "subject_id", "created_at", "expires_at"})


class TokenStore(Protocol):
    def get_token_by_hash(
        self, token_hash: str, *, include_revoked: bool = False
    ) -> Optional[TokenRecord]: ...


class TokenCache(Protocol):
    async def get_token_entry(self, token_hash: str) -> Optional[dict]: ...

    async def set_token_entry(
        self, token_hash: str, entry: Dict[str, Any], ttl_seconds: int
    ) -> None: ...

    async def delete_token_entry(self, token_hash: str) -> None: ...

    async def mark_revoked(
        self, token_hash: str, marker: Dict[str, Any], ttl_seconds: int
    ) -> None: ...

    async def get_revocation(self, token_hash: str) -> Optional[dict]: ...


class LookupSource(str, Enum):
    REVOCATION_MARKER = "revocation_marker"
    CACHE = "cache"
    DURABLE = "durable"


@dataclass
class LookupResult:
    record: Optional[TokenRecord] = None
    source: Optional[LookupSource] = None
    revoked: bool = False
    token_id: Optional[str] = None

    @property
    def found(self) -> bool:
        return self.record is not None and not self.revoked


def cache_entry(record: TokenRecord) -> Dict[str, Any]:
    """JSON-safe projection of an active record, as stored under ``token:{hash}``."""
    return {
        "token_id": record.id,
        "subject_id": record.subject_id,
        "scope": list(record.scope),
        "service_name": record.service_name,
        "created_at": record.created_at.isoformat(),
        "expires_at": record.expires_at.isoformat(),
        "last_used_at": record.last_used_at.isoformat() if record.last_used_at else None,
        "request_count": record.request_count,
    }


def record_from_entry(token_hash: str, entry: Dict[str, Any]) -> TokenRecord:
    last_used = entry.get("last_used_at")
    return TokenRecord(
        id=entry["token_id"],
        token_hash=token_hash,
        subject_id=entry["subject_id"],
        scope=list(entry.get("scope") or []),
        created_at=datetime.fromisoformat(entry["created_at"]),
        expires_at=datetime.fromisoformat(entry["expires_at"]),
        service_name=entry.get("service_name"),
        last_used_at=datetime.fromisoformat(last_used) if last_used else None,
        request_count=int(entry.get("request_count") or 0),
    )


class TokenLookup:
    """Resolve a token hash through the revocation marker, the cache and the durable store.

    Sources are consulted in that order. A marker always wins over a cache hit.
    A durable hit repopulates the cache; a durable record that turns out to be
    revoked re-writes the marker so the next lookup stops early. If the marker
    cannot be read the cache is not trusted and the durable record decides.

    Cache failures are logged and skipped. Durable failures propagate as
    :class:`StoreUnavailable`.
    """

    def __init__(
        self,
        store: TokenStore,
        cache: Optional[TokenCache],
        *,
        revocation_grace_seconds: int,
        cache_max_ttl_seconds: int = 0,
    ) -> None:
        self.store = store
        self.cache = cache
        self.revocation_grace_seconds = revocation_grace_seconds
        self.cache_max_ttl_seconds = cache_max_ttl_seconds

    def entry_ttl(self, record: TokenRecord, now: datetime) -> int:
        remaining = math.ceil((record.expires_at - now).total_seconds())
        if remaining <= 0:
            return 0
        if self.cache_max_ttl_seconds > 0:
            return min(remaining, self.cache_max_ttl_seconds)
        return remaining

    async def find(self, token_hash: str, now: datetime) -> LookupResult:
        marker, marker_readable = await self._read_marker(token_hash)
        if marker is not None:
            return LookupResult(
                source=LookupSource.REVOCATION_MARKER,
                revoked=True,
                token_id=marker.get("token_id"),
            )

        if marker_readable:
            entry = await self._read_entry(token_hash)
            if entry is not None:
                record = record_from_entry(token_hash, entry)
                return LookupResult(record=record, source=LookupSource.CACHE, token_id=record.id)

        record = self.store.get_token_by_hash(token_hash, include_revoked=True)
        if record is None:
            return LookupResult(source=LookupSource.DURABLE)
        if record.revoked_at is not None:
            await self.remember_revocation(record)
            return LookupResult(
                record=record, source=LookupSource.DURABLE, revoked=True, token_id=record.id
            )
        await self.remember(record, now)
        return LookupResult(record=record, source=LookupSource.DURABLE, token_id=record.id)

    async def remember(self, record: TokenRecord, now: datetime) -> None:
        """Mirror an active record into the cache; best effort."""
        if self.cache is None:
            return
        ttl = self.entry_ttl(record, now)
        if ttl <= 0:
            return
        try:
            await self.cache.set_token_entry(record.token_hash, cache_entry(record), ttl)
        except StoreUnavailable as exc:
            logger.warning("token_cache_write_failed", token_id=record.id, error=str(exc))

    async def forget(self, token_hash: str) -> None:
        if self.cache is None:
            return
        try:
            await self.cache.delete_token_entry(token_hash)
        except StoreUnavailable as exc:
            logger.warning("token_cache_delete_failed", token_hash=token_hash, error=str(exc))

    async def remember_revocation(self, record: TokenRecord) -> bool:
        """Write the revocation marker and drop the cached entry; best effort.

        Returns False when either cache write failed.
        """
        if self.cache is None:
            return False
        marker = {
            "token_id": record.id,
            "reason": record.revocation_reason,
            "revoked_at": record.revoked_at.isoformat() if record.revoked_at else None,
        }
        ok = True
        try:
            await self.cache.mark_revoked(
                record.token_hash, marker, self.revocation_grace_seconds
            )
        except StoreUnavailable as exc:
            ok = False
            logger.warning("revocation_marker_write_failed", token_id=record.id, error=str(exc))
        try:
            await self.cache.delete_token_entry(record.token_hash)
        except StoreUnavailable as exc:
            ok = False
            logger.warning("token_cache_delete_failed", token_id=record.id, error=str(exc))
        return ok

    async def _read_marker(self, token_hash: str) -> tuple[Optional[dict], bool]:
        if self.cache is None:
            return None, False
        try:
            return await self.cache.get_revocation(token_hash), True
        except StoreUnavailable as exc:
            logger.warning("revocation_marker_read_failed", token_hash=token_hash, error=str(exc))
            return None, False

    async def _read_entry(self, token_hash: str) -> Optional[dict]:
        if self.cache is None:
            return None
        try:
            entry = await self.cache.get_token_entry(token_hash)
        except StoreUnavailable as exc:
            logger.warning("token_cache_read_failed", token_hash=token_hash, error=str(exc))
            return None
        if not isinstance(entry, dict):
            return None
        # Entries written by an older shape are treated as a miss
        if not _ENTRY_KEYS.issubset(entry):
            return None
        return entry
