from __future__ import annotations

import copy
import threading
import time
from typing import Any, Callable, Dict, Optional, Tuple


class MemoryCache:
    """In-process stand-in for RedisCache with the same async surface.

    Used under TEST_MODE or ALLOW_REDIS_FALLBACK_DEV. Entries expire lazily
    on read against an injectable monotonic clock.
    """

    def __init__(self, *, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._entries: Dict[str, Tuple[Any, float]] = {}
        self._lock = threading.Lock()

    def _get(self, key: str) -> Any:
        with self._lock:
            item = self._entries.get(key)
            if item is None:
                return None
            value, expires_at = item
            if expires_at <= self._clock():
                self._entries.pop(key, None)
                return None
            return copy.deepcopy(value)

    def _set(self, key: str, value: Any, ttl_seconds: float) -> None:
        with self._lock:
            self._entries[key] = (copy.deepcopy(value), self._clock() + ttl_seconds)

    def _delete(self, key: str) -> None:
        with self._lock:
            self._entries.pop(key, None)

    def verify_connection(self) -> None:
        return None

    async def get_token_entry(self, token_hash: str) -> Optional[dict]:
        return self._get(f"token:{token_hash}")

    async def set_token_entry(
        self, token_hash: str, entry: Dict[str, Any], ttl_seconds: int
    ) -> None:
        if ttl_seconds <= 0:
            return
        self._set(f"token:{token_hash}", entry, ttl_seconds)

    async def delete_token_entry(self, token_hash: str) -> None:
        self._delete(f"token:{token_hash}")

    async def mark_revoked(
        self, token_hash: str, marker: Dict[str, Any], ttl_seconds: int
    ) -> None:
        self._set(f"revoked:{token_hash}", marker, ttl_seconds)

    async def get_revocation(self, token_hash: str) -> Optional[dict]:
        return self._get(f"revoked:{token_hash}")

    async def increment_within_limit(
        self, key: str, limit: int, ttl_seconds: int
    ) -> Tuple[bool, int]:
        now = self._clock()
        with self._lock:
            item = self._entries.get(key)
            if item is None or item[1] <= now:
                count, expires_at = 0, now + max(1, ttl_seconds)
            else:
                count, expires_at = item
            if count >= limit:
                return False, count
            count += 1
            self._entries[key] = (count, expires_at)
            return True, count

    async def put_audit_event(
        self, event_id: str, payload: Dict[str, Any], ttl_seconds: int
    ) -> None:
        self._set(f"audit:event:{event_id}", payload, ttl_seconds)

    def get_audit_event(self, event_id: str) -> Optional[dict]:
        return self._get(f"audit:event:{event_id}")

    async def close(self) -> None:
        with self._lock:
            self._entries.clear()
