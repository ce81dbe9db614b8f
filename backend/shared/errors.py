"""
Typed error taxonomy for the ScoreBase engine.

Every error carries a stable machine-readable ``code``, a human message and a
``details`` mapping. The API layer maps each category to an HTTP status.
"""
from __future__ import annotations

from typing import Any, Optional


class ScoreBaseError(Exception):
    """Base class for all engine errors."""

    status_code: int = 500
    retryable: bool = False

    def __init__(
        self,
        code: str,
        message: str,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        super().__init__(message)
        self.code = code
        self.message = message
        self.details: dict[str, Any] = details or {}

    def to_dict(self) -> dict[str, Any]:
        return {"code": self.code, "message": self.message, "details": self.details}

    def __repr__(self) -> str:
        return f"{type(self).__name__}(code={self.code!r}, message={self.message!r})"


class ValidationError(ScoreBaseError):
    """Malformed input: bad payload, unknown event type, out-of-window timestamp."""

    status_code = 400


class NotFoundError(ScoreBaseError):
    """Referenced game, season or event does not exist within the tenant."""

    status_code = 404


class ConflictError(ScoreBaseError):
    """The request is well-formed but conflicts with current state."""

    status_code = 409


class TenantIsolationError(ScoreBaseError):
    """Missing/invalid tenant, unscoped query, or a cross-tenant row."""

    status_code = 403


class ServiceUnavailableError(ScoreBaseError):
    """A backing store timed out or refused the connection. Safe to retry."""

    status_code = 503
    retryable = True

    def __init__(
        self,
        code: str,
        message: str,
        details: Optional[dict[str, Any]] = None,
        retry_after_s: int = 1,
    ) -> None:
        super().__init__(code, message, details)
        self.retry_after_s = retry_after_s


class AuthError(ScoreBaseError):
    """The caller could not be authenticated."""

    status_code = 401


class ForbiddenError(ScoreBaseError):
    """The caller is authenticated but lacks the required role."""

    status_code = 403
