from __future__ import annotations

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from tokenwarden.api.schemas import Envelope, ErrorBody
from tokenwarden.logging import get_logger
from tokenwarden.service.errors import ServiceError
from tokenwarden.storage.errors import ConstraintViolation

logger = get_logger(__name__)

# Error codes for failures that do not carry their own (framework errors)
_CODE_BY_STATUS = {
    400: "validation_error",
    401: "unauthorized",
    403: "forbidden",
    404: "not_found",
    405: "validation_error",
    409: "conflict",
    429: "rate_limited",
    503: "store_unavailable",
}

# Seconds a client should wait before retrying a 503
STORE_RETRY_AFTER_SECONDS = 1


def error_response(
    status_code: int,
    message: str,
    details: dict | list | None = None,
    code: str | None = None,
    headers: dict | None = None,
) -> JSONResponse:
    body = ErrorBody(
        code=code or _CODE_BY_STATUS.get(status_code, "server_error"),
        message=message,
        details=details,
    )
    return JSONResponse(
        status_code=status_code,
        content=Envelope(status="error", error=body).model_dump(mode="json"),
        headers=headers,
    )


def _retry_after(exc: ServiceError) -> dict | None:
    if exc.status_code == 503:
        return {"Retry-After": str(STORE_RETRY_AFTER_SECONDS)}
    if exc.status_code == 429 and exc.detail.get("retry_after"):
        return {"Retry-After": str(exc.detail["retry_after"])}
    return None


async def handle_service_error(request: Request, exc: ServiceError) -> JSONResponse:
    log = logger.error if exc.status_code >= 500 else logger.info
    log(
        "request_failed",
        path=request.url.path,
        method=request.method,
        status_code=exc.status_code,
        error_code=exc.error_code,
        message=exc.message,
    )
    return error_response(
        exc.status_code,
        exc.message,
        exc.detail or None,
        code=exc.error_code,
        headers=_retry_after(exc),
    )


async def handle_constraint_violation(
    request: Request, exc: ConstraintViolation
) -> JSONResponse:
    logger.warning(
        "constraint_violation", path=request.url.path, message=exc.message, detail=exc.detail
    )
    return error_response(409, exc.message, exc.detail or None, code="conflict")


async def handle_request_validation(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    problems = [
        {"loc": list(err.get("loc", ())), "msg": err.get("msg"), "type": err.get("type")}
        for err in exc.errors()
    ]
    logger.info("request_body_invalid", path=request.url.path, problem_count=len(problems))
    return error_response(400, "invalid request body", problems, code="validation_error")


async def handle_http_exception(
    request: Request, exc: StarletteHTTPException
) -> JSONResponse:
    message = exc.detail if isinstance(exc.detail, str) else "http error"
    return error_response(exc.status_code, message, headers=getattr(exc, "headers", None))


async def handle_uncaught(request: Request, exc: Exception) -> JSONResponse:
    logger.exception(
        "unhandled_exception",
        exc_info=exc,
        path=request.url.path,
        method=request.method,
        error_type=type(exc).__name__,
    )
    return error_response(500, "internal server error", code="server_error")


def register_exception_handlers(app: FastAPI) -> None:
    """Route every failure through the error envelope."""
    app.add_exception_handler(ServiceError, handle_service_error)
    app.add_exception_handler(ConstraintViolation, handle_constraint_violation)
    app.add_exception_handler(RequestValidationError, handle_request_validation)
    app.add_exception_handler(StarletteHTTPException, handle_http_exception)
    app.add_exception_handler(Exception, handle_uncaught)
