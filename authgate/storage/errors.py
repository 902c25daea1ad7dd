from __future__ import annotations

from typing import Any, Dict, Optional


class ConstraintViolation(Exception):
    """Raised when a storage-layer uniqueness constraint is violated."""

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


class StoreUnavailable(Exception):
    """The revocation store did not answer within its deadline or refused the call."""

    def __init__(self, operation: str, cause: Optional[BaseException] = None):
        reason = type(cause).__name__ if cause is not None else "unavailable"
        super().__init__(f"revocation store {operation} failed: {reason}")
        self.operation = operation
        self.cause = cause


__all__ = ["ConstraintViolation", "StoreUnavailable"]
