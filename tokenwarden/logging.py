from __future__ import annotations

import logging
import os
import re
import uuid
from contextvars import ContextVar
from typing import Any, MutableMapping, Optional

import structlog

_request_id: ContextVar[Optional[str]] = ContextVar("request_id", default=None)

# Values under these keys are bearer credentials or key material.
# token_id and token_hash identify a token without granting anything.
_SECRET_KEYS = frozenset(
    {
        "token",
        "raw_token",
        "new_token",
        "service_token",
        "session_token",
        "signing_key",
        "authorization",
        "api_key",
        "secret",
        "password",
    }
)

_TRUTHY = {"1", "true", "yes", "on"}


def get_correlation_id() -> Optional[str]:
    return _request_id.get()


def set_correlation_id(correlation_id: Optional[str] = None) -> str:
    """Bind a request id to the current context, minting one when absent."""
    value = correlation_id or uuid.uuid4().hex
    _request_id.set(value)
    return value


def _add_correlation_id(
    logger: Any, method_name: str, event_dict: MutableMapping[str, Any]
) -> MutableMapping[str, Any]:
    request_id = _request_id.get()
    if request_id and "correlation_id" not in event_dict:
        event_dict["correlation_id"] = request_id
    return event_dict


def _mask(value: str) -> str:
    # Keep the environment prefix visible so a live/test mix-up is obvious
    return f"{value[:4]}***{value[-2:]}"


def _redact_secrets(
    logger: Any, method_name: str, event_dict: MutableMapping[str, Any]
) -> MutableMapping[str, Any]:
    for key, value in list(event_dict.items()):
        if value is None or key.lower() not in _SECRET_KEYS:
            continue
        if isinstance(value, str) and len(value) > 8:
            event_dict[key] = _mask(value)
        else:
            event_dict[key] = "***"
    return event_dict


def configure_logging(
    level: str = "INFO", *, json_output: bool = True, dev_mode: bool = False
) -> None:
    """Install the structlog pipeline used by the service and its scripts.

    JSON lines in deployed environments; coloured console output when
    ``dev_mode`` is set or ``json_output`` is off.
    """
    processors: list = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        _add_correlation_id,
        _redact_secrets,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]
    if dev_mode or not json_output:
        processors.append(structlog.dev.ConsoleRenderer(colors=True))
    else:
        processors.extend(
            [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]
        )

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, level.upper(), logging.INFO)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


configure_logging(
    os.getenv("LOG_LEVEL", "INFO"),
    json_output=os.getenv("LOG_JSON", "true").lower() in _TRUTHY,
    dev_mode=os.getenv("LOG_DEV_MODE", "false").lower() in _TRUTHY,
)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)


# Store errors can echo DSNs, statements or credentials back at us
_LEAKY_FRAGMENTS = [
    re.compile(r"(?i)(postgres(ql)?|redis|rediss)://\S+"),
    re.compile(r"(?i)\b(select|insert|update|delete)\b\s+.{0,80}"),
    re.compile(r"(?i)\b(password|secret|token|key|api.?key)\s*[:=]\s*\S+"),
    re.compile(r"(?i)connection\s+.*\s+(failed|refused|timeout)"),
    re.compile(r"(?i)traceback\s*\(most recent call last\)"),
]

MAX_ERROR_MESSAGE_LENGTH = 500


def sanitize_error_message(error: Any, *, replacement: str = "[redacted]") -> str:
    """Scrub infrastructure detail from an error before it leaves the process.

    Applied to store failures that end up in audit events or API responses.
    """
    if not isinstance(error, str) or not error:
        return "An error occurred"
    for fragment in _LEAKY_FRAGMENTS:
        error = fragment.sub(replacement, error)
    if len(error) > MAX_ERROR_MESSAGE_LENGTH:
        error = error[: MAX_ERROR_MESSAGE_LENGTH - 3] + "..."
    return error


def bind_request_context(**values: Any) -> None:
    """Attach values (e.g. ``path``, ``method``) to every log line of the request."""
    structlog.contextvars.bind_contextvars(**values)


def clear_request_context() -> None:
    structlog.contextvars.clear_contextvars()


__all__ = [
    "configure_logging",
    "get_logger",
    "get_correlation_id",
    "set_correlation_id",
    "sanitize_error_message",
    "bind_request_context",
    "clear_request_context",
]
