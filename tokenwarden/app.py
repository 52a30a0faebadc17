from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import List

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from tokenwarden.api.error_handling import register_exception_handlers
from tokenwarden.api.routes import router
from tokenwarden.api.schemas import HealthResponse
from tokenwarden.config import Settings
from tokenwarden.logging import (
    bind_request_context,
    clear_request_context,
    get_logger,
    set_correlation_id,
)

logger = get_logger(__name__)

_settings = Settings.from_env()

__version__ = "1.0.0"

HEALTH_CHECK_TIMEOUT_SECONDS = 3


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Start the audit writer on startup; drain it and close clients on shutdown."""
    from tokenwarden.service.runtime import get_runtime

    runtime = get_runtime()
    await runtime.start()
    logger.info("app_started", version=__version__, environment=runtime.settings.environment.value)

    yield

    try:
        await runtime.shutdown()
        logger.info("runtime_cleanup_complete")
    except Exception as exc:
        logger.error("shutdown_failed", error_type=type(exc).__name__, error=str(exc))


app = FastAPI(title="tokenwarden", version=__version__, lifespan=lifespan)


def _allowed_origins() -> List[str]:
    if _settings.cors_allow_origins:
        return _settings.cors_allow_origins
    return ["http://localhost", "http://localhost:3000", "http://127.0.0.1:3000"]


app.add_middleware(
    CORSMiddleware,
    allow_origins=_allowed_origins(),
    allow_credentials=False,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization", "X-Request-ID"],
    expose_headers=["X-Request-ID", "API-Version", "Retry-After"],
    max_age=3600,
)


@app.middleware("http")
async def add_correlation_id(request, call_next):
    """Tag logs with the caller's X-Request-ID (or a fresh one) and echo it back."""
    clear_request_context()
    correlation_id = set_correlation_id(request.headers.get("X-Request-ID"))
    bind_request_context(path=request.url.path, method=request.method)
    response = await call_next(request)
    response.headers["X-Request-ID"] = correlation_id
    return response


@app.middleware("http")
async def add_security_headers(request, call_next):
    response = await call_next(request)
    response.headers.setdefault("X-Frame-Options", "DENY")
    response.headers.setdefault("X-Content-Type-Options", "nosniff")
    response.headers.setdefault("Referrer-Policy", "no-referrer")
    # Responses can carry plaintext tokens; never let proxies keep them
    response.headers.setdefault("Cache-Control", "no-store")
    response.headers.setdefault("API-Version", __version__)
    return response


register_exception_handlers(app)
app.include_router(router)


async def _bounded(label: str, probe) -> bool:
    try:
        await asyncio.wait_for(probe(), HEALTH_CHECK_TIMEOUT_SECONDS)
        return True
    except asyncio.TimeoutError:
        logger.error("health_check_timeout", component=label, timeout=HEALTH_CHECK_TIMEOUT_SECONDS)
    except Exception as exc:
        logger.error("health_check_failed", component=label, error_type=type(exc).__name__)
    return False


@app.get("/health")
async def health():
    """Report dependency reachability and audit degradation.

    ``unhealthy`` (503) when the durable store or cache cannot be reached;
    ``degraded`` when the identity service is down or audit writes have failed.
    """
    from tokenwarden.service.runtime import get_runtime

    runtime = get_runtime()

    store_ok = await _bounded(
        "database", lambda: asyncio.to_thread(runtime.store.verify_connection)
    )
    cache_ok = await _bounded(
        "cache", lambda: asyncio.to_thread(runtime.cache.verify_connection)
    )

    async def _identity_probe() -> None:
        if not await runtime.identity.health_check():
            raise ConnectionError("identity service unhealthy")

    identity_ok = await _bounded("identity", _identity_probe)

    audit = runtime.audit
    if not (store_ok and cache_ok):
        status = "unhealthy"
    elif not identity_ok or audit.degraded:
        status = "degraded"
    else:
        status = "healthy"

    body = HealthResponse(
        status=status,
        version=__version__,
        timestamp=datetime.now(timezone.utc),
        dependencies={
            "database": "healthy" if store_ok else "unhealthy",
            "cache": "healthy" if cache_ok else "unhealthy",
            "identity": "healthy" if identity_ok else "unhealthy",
        },
        audit={
            "running": audit.running,
            "durable_failures": audit.durable_failures,
            "cache_failures": audit.cache_failures,
            "degraded": audit.degraded,
        },
    )
    return JSONResponse(
        status_code=503 if status == "unhealthy" else 200,
        content=body.model_dump(mode="json"),
    )
