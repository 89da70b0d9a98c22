from __future__ import annotations

import logging
import time
from collections.abc import Callable
from typing import TypeVar

from sqlalchemy.exc import (
    DataError,
    DBAPIError,
    IntegrityError,
    InterfaceError,
    OperationalError,
    ProgrammingError,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

_TRANSIENT_MARKERS = (
    "deadlock",
    "connection reset",
    "connection refused",
    "connection closed",
    "server closed the connection",
    "could not connect",
    "timeout",
    "timed out",
    "database is locked",
)
_FATAL_MARKERS = ("duplicate key", "syntax error", "violates")


def is_retryable_db_error(exc: BaseException) -> bool:
    if isinstance(exc, (IntegrityError, DataError, ProgrammingError)):
        return False
    message = str(exc).lower()
    if any(marker in message for marker in _FATAL_MARKERS):
        return False
    if isinstance(exc, (OperationalError, InterfaceError)):
        return True
    if isinstance(exc, DBAPIError) and exc.connection_invalidated:
        return True
    return any(marker in message for marker in _TRANSIENT_MARKERS)


def call_with_retry(
    operation: Callable[[], T],
    *,
    is_retryable: Callable[[BaseException], bool] = is_retryable_db_error,
    max_attempts: int = 3,
    base_delay: float = 0.2,
    sleep: Callable[[float], None] = time.sleep,
    label: str = "db operation",
) -> T:
    """Run *operation*, retrying transient failures with exponential backoff.

    Non-retryable errors propagate on the first failure; the last transient error
    propagates once ``max_attempts`` is reached.
    """
    attempts = max(1, int(max_attempts))
    for attempt in range(1, attempts + 1):
        try:
            return operation()
        except Exception as exc:
            if attempt >= attempts or not is_retryable(exc):
                raise
            delay = base_delay * (2 ** (attempt - 1))
            logger.warning(
                "Transient error in %s (attempt %s/%s), retrying in %.2fs: %s",
                label,
                attempt,
                attempts,
                delay,
                exc.__class__.__name__,
            )
            sleep(delay)
    raise AssertionError("unreachable")


def with_retry(
    operation: Callable[[], T],
    **retry_kwargs,
) -> Callable[[], T]:
    """Return *operation* wrapped by ``call_with_retry`` with the given policy."""

    def _wrapped() -> T:
        return call_with_retry(operation, **retry_kwargs)

    return _wrapped
