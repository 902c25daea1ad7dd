from __future__ import annotations

from enum import Enum
from typing import Optional


class ErrorKind(str, Enum):
    """Failure categories raised by the service layer.

    The HTTP layer owns the mapping from kind to status code
    (``authgate.api.error_handling``); nothing below it knows about HTTP.
    """

    MALFORMED = "malformed"
    BAD_SIGNATURE = "bad_signature"
    EXPIRED = "expired"
    WRONG_KIND = "wrong_kind"
    INVALID_CREDENTIALS = "invalid_credentials"
    INVALID_TOKEN = "invalid_token"
    DUPLICATE_IDENTITY = "duplicate_identity"
    RATE_LIMITED = "rate_limited"
    FORBIDDEN = "forbidden"
    DEPENDENCY_UNAVAILABLE = "dependency_unavailable"


class ServiceError(Exception):
    """Base class for service-layer failures."""

    kind: ErrorKind = ErrorKind.MALFORMED
    default_message: str = "invalid request"

    def __init__(
        self,
        message: Optional[str] = None,
        *,
        kind: Optional[ErrorKind] = None,
        detail: Optional[dict] = None,
    ) -> None:
        message = message or self.default_message
        super().__init__(message)
        self.message = message
        if kind is not None:
            self.kind = kind
        self.detail = detail or {}


class ValidationError(ServiceError):
    """Request content is structurally invalid."""
    kind = ErrorKind.MALFORMED


class InvalidCredentialsError(ServiceError):
    """Unknown account, wrong password, or suspended account; deliberately indistinguishable."""
    kind = ErrorKind.INVALID_CREDENTIALS
    default_message = "invalid credentials"


class InvalidTokenError(ServiceError):
    """A presented token cannot be honoured, for whatever reason."""
    kind = ErrorKind.INVALID_TOKEN
    default_message = "invalid or expired token"


class DuplicateIdentityError(ServiceError):
    kind = ErrorKind.DUPLICATE_IDENTITY
    default_message = "an account with this email already exists"


class RateLimitedError(ServiceError):
    """Admission refused for the current window."""

    kind = ErrorKind.RATE_LIMITED
    default_message = "rate limit exceeded"

    def __init__(
        self,
        message: Optional[str] = None,
        *,
        retry_after_seconds: int = 0,
        limit: Optional[int] = None,
    ) -> None:
        detail: dict = {"retry_after_seconds": retry_after_seconds}
        if limit is not None:
            detail["limit"] = limit
        super().__init__(message, detail=detail)
        self.retry_after_seconds = retry_after_seconds


class ForbiddenError(ServiceError):
    kind = ErrorKind.FORBIDDEN
    default_message = "forbidden"


class DependencyUnavailableError(ServiceError):
    kind = ErrorKind.DEPENDENCY_UNAVAILABLE
    default_message = "service temporarily unavailable"


class TokenError(ServiceError):
    """Raised by the token codec; ``kind`` says which check failed."""

    default_message = "token rejected"

    def __init__(self, kind: ErrorKind, message: Optional[str] = None) -> None:
        super().__init__(message or kind.value.replace("_", " "), kind=kind)


__all__ = [
    "ErrorKind",
    "ServiceError",
    "ValidationError",
    "InvalidCredentialsError",
    "InvalidTokenError",
    "DuplicateIdentityError",
    "RateLimitedError",
    "ForbiddenError",
    "DependencyUnavailableError",
    "TokenError",
]
