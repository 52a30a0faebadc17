from __future__ import annotations

import contextlib
import json
from typing import Any, AsyncIterator, Dict, Optional, Tuple

import redis.asyncio as aioredis
from redis import Redis
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import TimeoutError as RedisTimeoutError

from tokenwarden.logging import get_logger
from tokenwarden.storage.errors import StoreUnavailable

logger = get_logger(__name__)


class RedisCache:
    """Thin Redis wrapper for token entries, revocation markers and counters."""

    DEFAULT_OPERATION_TIMEOUT = 5.0  # seconds

    # Atomic read-compare-increment: never grows the counter past the limit.
    _INCREMENT_WITHIN_LIMIT_SCRIPT = """
local current = tonumber(redis.call('GET', KEYS[1]) or '0')
local limit = tonumber(ARGV[1])
local ttl = tonumber(ARGV[2])
if current >= limit then
  return {0, current}
end
current = redis.call('INCR', KEYS[1])
if current == 1 then
  redis.call('EXPIRE', KEYS[1], ttl)
end
return {1, current}
"""

    def __init__(self, redis_url: str, *, socket_timeout: float = DEFAULT_OPERATION_TIMEOUT):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._increment_within_limit = self.client.register_script(
            self._INCREMENT_WITHIN_LIMIT_SCRIPT
        )

    @staticmethod
    def _token_key(token_hash: str) -> str:
        return f"token:{token_hash}"

    @staticmethod
    def _revocation_key(token_hash: str) -> str:
        return f"revoked:{token_hash}"

    @contextlib.asynccontextmanager
    async def _guard(self, operation: str) -> AsyncIterator[None]:
        try:
            yield
        except (RedisConnectionError, RedisTimeoutError) as exc:
            logger.warning("redis_unavailable", operation=operation, error=str(exc))
            raise StoreUnavailable("redis", str(exc)) from exc

    @staticmethod
    def _loads(raw: Optional[str]) -> Optional[dict]:
        if not raw:
            return None
        try:
            data = json.loads(raw)
        except (json.JSONDecodeError, TypeError):
            # Corrupted cache entry - treat as cache miss
            return None
        return data if isinstance(data, dict) else None

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""

        # Short-lived synchronous client so the async client is not bound to a
        # temporary event loop during startup checks.
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def get_token_entry(self, token_hash: str) -> Optional[dict]:
        async with self._guard("get_token_entry"):
            raw = await self.client.get(self._token_key(token_hash))
        return self._loads(raw)

    async def set_token_entry(
        self, token_hash: str, entry: Dict[str, Any], ttl_seconds: int
    ) -> None:
        if ttl_seconds <= 0:
            return
        async with self._guard("set_token_entry"):
            await self.client.set(
                self._token_key(token_hash), json.dumps(entry), ex=ttl_seconds
            )

    async def delete_token_entry(self, token_hash: str) -> None:
        async with self._guard("delete_token_entry"):
            await self.client.delete(self._token_key(token_hash))

    async def mark_revoked(
        self, token_hash: str, marker: Dict[str, Any], ttl_seconds: int
    ) -> None:
        async with self._guard("mark_revoked"):
            await self.client.set(
                self._revocation_key(token_hash), json.dumps(marker), ex=ttl_seconds
            )

    async def get_revocation(self, token_hash: str) -> Optional[dict]:
        async with self._guard("get_revocation"):
            raw = await self.client.get(self._revocation_key(token_hash))
        if raw is None:
            return None
        # A marker that cannot be parsed still proves revocation.
        return self._loads(raw) or {}

    async def increment_within_limit(
        self, key: str, limit: int, ttl_seconds: int
    ) -> Tuple[bool, int]:
        """Increment ``key`` only while it is below ``limit``.

        Returns (allowed, count) where count is the value after the call.
        """
        async with self._guard("increment_within_limit"):
            allowed, count = await self._increment_within_limit(
                keys=[key], args=[limit, max(1, ttl_seconds)]
            )
        return bool(int(allowed)), int(count)

    async def put_audit_event(
        self, event_id: str, payload: Dict[str, Any], ttl_seconds: int
    ) -> None:
        async with self._guard("put_audit_event"):
            await self.client.set(f"audit:event:{event_id}", json.dumps(payload), ex=ttl_seconds)

    async def close(self) -> None:
        await self.client.aclose()
