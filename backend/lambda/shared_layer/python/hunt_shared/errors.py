"""hunt_shared.errors — Error taxonomy for team verification and photo uploads.

Every error a handler can surface is a ``HuntError`` carrying the HTTP status,
a stable upper-case code and optional details. Handlers turn them into the
standard error envelope with ``http_utils._error_from_exception``.
"""

from __future__ import annotations

import math
from typing import Any, Dict, Optional

__all__ = [
    "AuthConflict",
    "CircuitOpenError",
    "DependencyTimeoutError",
    "HuntError",
    "InvalidTokenError",
    "LockExpiredError",
    "NotFound",
    "PayloadTooLargeError",
    "PersistenceErrorAfterCompensation",
    "StorageError",
    "TeamCodeInvalidError",
    "TransientDependencyError",
    "ValidationError",
]


class HuntError(Exception):
    """Base exception for errors with a defined HTTP mapping."""

    status_code = 500
    code = "INTERNAL_ERROR"
    retryable = False

    def __init__(self, message: str, **details: Any) -> None:
        super().__init__(message)
        self.message = message
        self.details: Dict[str, Any] = details

    def headers(self) -> Dict[str, str]:
        return {}


class ValidationError(HuntError):
    """Caller's fault; never retried."""

    status_code = 400
    code = "INVALID_REQUEST"


class PayloadTooLargeError(HuntError):
    status_code = 413
    code = "PAYLOAD_TOO_LARGE"


class TeamCodeInvalidError(HuntError):
    status_code = 401
    code = "TEAM_CODE_INVALID"

    def __init__(self, message: str = "That code didn't work. Check with your host.") -> None:
        super().__init__(message)


class InvalidTokenError(HuntError):
    status_code = 401
    code = "INVALID_TOKEN"

    def __init__(self, message: str = "Invalid or malformed team lock token.") -> None:
        super().__init__(message)


class LockExpiredError(HuntError):
    status_code = 419
    code = "TEAM_LOCK_EXPIRED"

    def __init__(self, message: str = "Your team session has expired. Please re-enter your team code.") -> None:
        super().__init__(message)


class AuthConflict(HuntError):
    """The device is bound to a different team; retry after the lock expires."""

    status_code = 409
    code = "TEAM_LOCK_CONFLICT"
    retryable = True

    def __init__(self, team_id: str, remaining_ttl_seconds: int) -> None:
        hours_left = max(1, math.ceil(remaining_ttl_seconds / 3600))
        super().__init__(
            f"You're already checked in with another team for the next {hours_left}h.",
            remainingTtlSeconds=int(remaining_ttl_seconds),
        )
        self.team_id = team_id
        self.remaining_ttl_seconds = int(remaining_ttl_seconds)


class NotFound(HuntError):
    status_code = 404
    code = "NOT_FOUND"


class StorageError(HuntError):
    status_code = 500
    code = "STORAGE_ERROR"
    retryable = True


class TransientDependencyError(HuntError):
    """A dependency call failed in a way that is worth retrying."""

    status_code = 500
    code = "UPSTREAM_ERROR"
    retryable = True

    def __init__(self, message: str, dependency: str = "", cause: str = "", **details: Any) -> None:
        super().__init__(message, **details)
        self.dependency = dependency
        # Raw dependency text for logs; never part of the response body.
        self.cause = cause


class DependencyTimeoutError(TransientDependencyError):
    status_code = 504
    code = "TIMEOUT"


class CircuitOpenError(HuntError):
    """Raised instead of calling a dependency whose breaker is open."""

    status_code = 503
    code = "CIRCUIT_OPEN"
    retryable = True

    def __init__(self, dependency: str, retry_after_seconds: int) -> None:
        super().__init__(
            f"Circuit breaker OPEN for {dependency}",
            retryAfterSeconds=int(retry_after_seconds),
        )
        self.dependency = dependency
        self.retry_after_seconds = int(retry_after_seconds)

    def headers(self) -> Dict[str, str]:
        return {"Retry-After": str(self.retry_after_seconds)}


class PersistenceErrorAfterCompensation(HuntError):
    """The asset was uploaded but the progress write failed.

    ``compensation`` records whether deleting the asset worked; it is kept for
    logs only and never changes the status or the response body.
    """

    code = "PERSISTENCE_FAILED"
    retryable = True

    def __init__(
        self,
        original: BaseException,
        public_id: str,
        compensation: Optional[Dict[str, Any]] = None,
    ) -> None:
        message = "Failed to record progress"
        if isinstance(original, HuntError) and 400 <= original.status_code < 500:
            message = f"{message}: {original.message}"
        super().__init__(message)
        self.original = original
        self.public_id = public_id
        self.compensation: Dict[str, Any] = dict(compensation or {})
        if isinstance(original, HuntError) and (400 <= original.status_code < 500 or original.status_code == 504):
            self.status_code = original.status_code
            self.code = original.code
