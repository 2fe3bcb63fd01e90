"""hunt_shared.retry — Bounded retry with backoff and botocore error classification."""

from __future__ import annotations

import socket
import time
from typing import Callable, Optional, Sequence, TypeVar

from botocore.exceptions import (
    BotoCoreError,
    ClientError,
    ConnectionError as BotoConnectionError,
    ConnectTimeoutError,
    EndpointConnectionError,
    ReadTimeoutError,
)

from hunt_shared.config import logger
from hunt_shared.errors import DependencyTimeoutError, HuntError, TransientDependencyError

__all__ = [
    "classify_aws_error",
    "execute_with_retry",
    "is_retryable_error",
]

T = TypeVar("T")

_RETRYABLE_CLIENT_CODES = {
    "InternalError",
    "InternalServerError",
    "ProvisionedThroughputExceededException",
    "RequestLimitExceeded",
    "RequestTimeout",
    "ServiceUnavailable",
    "SlowDown",
    "ThrottlingException",
    "Throttling",
    "TransactionConflictException",
}


def _client_error_code(exc: ClientError) -> str:
    return str(exc.response.get("Error", {}).get("Code") or "")


def _client_error_status(exc: ClientError) -> int:
    return int(exc.response.get("ResponseMetadata", {}).get("HTTPStatusCode") or 0)


def classify_aws_error(exc: Exception, dependency: str) -> Exception:
    """Map a botocore failure onto the hunt error taxonomy.

    Timeouts become ``DependencyTimeoutError``, throttling / 5xx / connection
    problems become ``TransientDependencyError``; anything else is returned
    unchanged so the caller can re-raise it as-is. The botocore text (endpoint
    URLs, table ARNs) goes to the log and ``cause`` only; the message stays
    safe to return to clients.
    """
    if isinstance(exc, (ReadTimeoutError, ConnectTimeoutError, socket.timeout, TimeoutError)):
        classified: Exception = DependencyTimeoutError(
            "Upstream request timed out", dependency=dependency, cause=str(exc)
        )
    elif isinstance(exc, (EndpointConnectionError, BotoConnectionError)):
        classified = TransientDependencyError(
            "Upstream service unavailable", dependency=dependency, cause=str(exc)
        )
    elif isinstance(exc, ClientError) and (
        _client_error_code(exc) in _RETRYABLE_CLIENT_CODES or _client_error_status(exc) >= 500
    ):
        classified = TransientDependencyError(
            "Upstream service error", dependency=dependency, cause=str(exc)
        )
    else:
        return exc
    logger.warning("%s call failed (%s): %s", dependency, type(classified).__name__, exc)
    return classified


def is_retryable_error(exc: BaseException) -> bool:
    if isinstance(exc, HuntError):
        return isinstance(exc, TransientDependencyError)
    if isinstance(exc, (TimeoutError, ConnectionError)):
        return True
    if isinstance(exc, ClientError):
        return _client_error_code(exc) in _RETRYABLE_CLIENT_CODES or _client_error_status(exc) >= 500
    if isinstance(exc, BotoCoreError):
        return isinstance(exc, (EndpointConnectionError, BotoConnectionError, ReadTimeoutError, ConnectTimeoutError))
    return False


def execute_with_retry(
    operation: Callable[[], T],
    *,
    delays_ms: Sequence[int],
    max_attempts: int = 3,
    operation_name: str = "operation",
    should_retry: Callable[[BaseException], bool] = is_retryable_error,
    sleep: Optional[Callable[[float], None]] = None,
) -> T:
    """Run ``operation`` up to ``max_attempts`` times, sleeping between attempts.

    ``delays_ms[i]`` is the wait after attempt ``i + 1`` fails; the last delay
    is reused when the sequence is shorter than the attempt budget. A
    non-retryable error is raised immediately; on exhaustion the last error
    is raised.
    """
    sleep = sleep or time.sleep
    attempts = max(1, int(max_attempts))
    attempt = 0

    while True:
        attempt += 1
        try:
            result = operation()
        except Exception as exc:
            if not should_retry(exc):
                logger.warning("%s failed with non-retryable error: %s", operation_name, exc)
                raise
            if attempt >= attempts:
                logger.warning("%s failed after %d attempts: %s", operation_name, attempts, exc)
                raise
            delay_ms = delays_ms[min(attempt - 1, len(delays_ms) - 1)] if delays_ms else 0
            logger.info(
                "[INFO] %s attempt %d failed, retrying in %dms: %s",
                operation_name,
                attempt,
                delay_ms,
                exc,
            )
            sleep(delay_ms / 1000.0)
            continue
        if attempt > 1:
            logger.info("[INFO] %s succeeded on attempt %d", operation_name, attempt)
        return result
