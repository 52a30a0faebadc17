from __future__ import annotations

from typing import Any, Dict, Optional


class ConstraintViolation(Exception):
    """Raised when a storage-layer uniqueness or FK constraint is violated."""

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


class StoreUnavailable(Exception):
    """Raised when a durable or cache store cannot be reached or times out.

    Storage adapters translate driver-specific connection and timeout errors
    into this type so callers never mistake an outage for a missing row.
    """

    def __init__(self, store: str, message: str):
        super().__init__(f"{store} unavailable: {message}")
        self.store = store
        self.message = message


__all__ = ["ConstraintViolation", "StoreUnavailable"]
