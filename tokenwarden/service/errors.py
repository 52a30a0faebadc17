from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """An error the HTTP layer turns into an error envelope.

    Subclasses pin an HTTP ``status_code`` and a stable ``error_code``; both
    can be overridden per instance, e.g. a 401 whose code is the validation
    failure reason.
    """

    status_code: int = 400
    error_code: str = "validation_error"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.detail = dict(detail or {})
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code


class InvalidRequestError(ServiceError):
    """Missing or malformed caller input. Retrying the same call cannot help."""


class AuthenticationError(ServiceError):
    status_code = 401
    error_code = "unauthorized"


class ForbiddenError(ServiceError):
    status_code = 403
    error_code = "forbidden"


class RateLimitedError(ServiceError):
    """Raised at the HTTP boundary; ``detail["retry_after"]`` feeds Retry-After."""

    status_code = 429
    error_code = "rate_limited"


class ServerError(ServiceError):
    status_code = 500
    error_code = "server_error"


class StoreUnavailableError(ServiceError):
    """The durable store or the cache timed out or refused a connection.

    Safe to retry with backoff. Never reported as a validation negative.
    """

    status_code = 503
    error_code = "store_unavailable"


__all__ = [
    "ServiceError",
    "InvalidRequestError",
    "AuthenticationError",
    "ForbiddenError",
    "RateLimitedError",
    "ServerError",
    "StoreUnavailableError",
]
