"""
Atomic Unit Runner - one database transaction per ledger mutation.

Each unit commits exactly once or rolls back completely. Units that lose a
race (serialization failure, deadlock, SQLite lock timeout, or an optimistic
compare-and-set miss) are replayed from the start.
"""

import asyncio
from collections.abc import Awaitable, Callable
from typing import TypeVar

from sqlalchemy.exc import DBAPIError
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from app.config import settings
from app.exceptions import StorageConflictError
from app.observability.metrics import metrics
from app.observability.tracing import trace_operation

logger = get_logger(__name__)

T = TypeVar("T")

# PostgreSQL serialization_failure and deadlock_detected
RETRYABLE_SQLSTATES = frozenset({"40001", "40P01"})


def is_retryable(exc: BaseException) -> bool:
    """Whether a failed unit can be replayed safely."""
    if isinstance(exc, StorageConflictError):
        return True
    if isinstance(exc, DBAPIError):
        orig = exc.orig
        sqlstate = getattr(orig, "sqlstate", None) or getattr(orig, "pgcode", None)
        if sqlstate in RETRYABLE_SQLSTATES:
            return True
        return "database is locked" in str(orig)
    return False


async def run_atomic(
    session: AsyncSession,
    operation: Callable[[], Awaitable[T]],
    name: str,
    *,
    attempts: int | None = None,
) -> T:
    """
    Run `operation` as one transaction on `session` and commit it.

    Raises:
        StorageConflictError: If every attempt lost a race
        Any non-retryable exception from `operation`, after rollback
    """
    max_attempts = attempts or settings.storage_retry_attempts

    for attempt in range(1, max_attempts + 1):
        try:
            with trace_operation(f"ledger.{name}", attempt=attempt):
                result = await operation()
                await session.commit()
            return result
        except Exception as exc:
            await session.rollback()
            if not is_retryable(exc):
                raise
            metrics.record_storage_retry(name)
            logger.warning(
                "storage_conflict_retry",
                operation=name,
                attempt=attempt,
                max_attempts=max_attempts,
                error=str(exc),
            )
            if attempt < max_attempts:
                await asyncio.sleep(settings.storage_retry_backoff_seconds * attempt)

    metrics.storage_conflicts_exhausted_total.labels(operation=name).inc()
    logger.error("storage_conflict_exhausted", operation=name, attempts=max_attempts)
    raise StorageConflictError(name)

