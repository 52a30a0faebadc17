from __future__ import annotations

import threading
from typing import Optional, Union
from urllib.parse import urlparse, urlunparse

from tokenwarden.config import get_settings, reset_settings_cache
from tokenwarden.logging import get_logger
from tokenwarden.service.audit import AuditLogger
from tokenwarden.service.identity import IdentityVerifier
from tokenwarden.service.rate_limit import RateLimiter
from tokenwarden.service.tokens import EngineConfig, TokenLifecycleEngine
from tokenwarden.storage.memory import MemoryStore
from tokenwarden.storage.memory_cache import MemoryCache
from tokenwarden.storage.postgres import PostgresStore
from tokenwarden.storage.redis_cache import RedisCache

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password component of a URL for logging.

    Example: redis://:secret@localhost:6379 -> redis://:***@localhost:6379
    """
    if not url:
        return url
    try:
        parsed = urlparse(url)
    except ValueError:
        return "***url_parse_error***"
    if not parsed.password:
        return url
    netloc = parsed.hostname or ""
    if parsed.port:
        netloc = f"{netloc}:{parsed.port}"
    if parsed.username:
        netloc = f"{parsed.username}:***@{netloc}"
    else:
        netloc = f":***@{netloc}"
    return urlunparse(
        (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
    )


class Runtime:
    """Process-wide wiring of stores, engine and clients.

    Built lazily by ``get_runtime()`` on the first request (or script call).
    """

    def __init__(self):
        self.settings = get_settings()
        logger.info(
            "runtime_init_started",
            environment=self.settings.environment.value,
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )
        self.store: Union[MemoryStore, PostgresStore] = self._build_store()
        self.cache: Union[RedisCache, MemoryCache] = self._build_cache()
        self.cache_backend = "redis" if isinstance(self.cache, RedisCache) else "memory"

        self.audit = AuditLogger(
            self.store,
            self.cache,
            cache_ttl_seconds=self.settings.audit_cache_ttl_seconds,
            queue_size=self.settings.audit_queue_size,
        )
        self.rate_limiter = RateLimiter.from_settings(self.cache, self.settings)
        self.engine = TokenLifecycleEngine(
            EngineConfig.from_settings(self.settings),
            self.store,
            self.cache,
            self.rate_limiter,
            self.audit,
        )
        self.identity = IdentityVerifier(
            self.settings.identity_verifier_url,
            api_key=self.settings.identity_verifier_api_key,
            timeout=self.settings.identity_verifier_timeout,
        )
        logger.info(
            "runtime_initialized",
            environment=self.settings.environment.value,
            token_prefix=self.engine.codec.prefix,
            cache_backend=self.cache_backend,
            identity_configured=self.identity.is_configured,
        )

    def _build_store(self) -> Union[MemoryStore, PostgresStore]:
        if self.settings.use_memory_store:
            return MemoryStore()
        try:
            return PostgresStore(self.settings.database_url)
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type="postgres",
                database_url=_mask_url_password(self.settings.database_url),
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise

    def _build_cache(self) -> Union[RedisCache, MemoryCache]:
        """Redis unless running under TEST_MODE; the in-process cache only by opt-in."""
        settings = self.settings
        redis_error: Exception | None = None
        if settings.redis_url and not settings.test_mode:
            try:
                cache = RedisCache(settings.redis_url)
                cache.verify_connection()
                return cache
            except Exception as exc:
                redis_error = exc

        if not settings.test_mode and not settings.allow_redis_fallback_dev:
            raise RuntimeError(
                "Redis is unreachable and holds revocation markers and rate-limit counters; "
                "start Redis or set TEST_MODE/ALLOW_REDIS_FALLBACK_DEV for a local fallback."
            ) from redis_error
        fallback_mode = "TEST_MODE" if settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV"
        logger.warning(
            "redis_disabled_fallback",
            redis_url=_mask_url_password(settings.redis_url),
            error=str(redis_error) if redis_error else None,
            mode=fallback_mode,
            message="revocation markers and rate-limit counters are in-process only",
        )
        return MemoryCache()

    async def start(self) -> None:
        await self.audit.start()

    async def shutdown(self) -> None:
        await self.audit.stop()
        await self.identity.close()
        await self.cache.close()
        if isinstance(self.store, PostgresStore):
            self.store.close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Return the shared Runtime, building it on first use.

    Double-checked: the unlocked read is the hot path, the locked re-check
    keeps two threads from building it twice.
    """
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Rebuild the Runtime from freshly read settings. TEST_MODE only.

    TEST_MODE never opens Redis, so the previous runtime holds nothing to close.
    """
    global runtime

    with _runtime_lock:
        reset_settings_cache()
        if not get_settings().test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime()
        return runtime
