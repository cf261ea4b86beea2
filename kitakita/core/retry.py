"""Bounded retry for transient storage failures."""

import asyncio
from collections.abc import Awaitable, Callable
from typing import TypeVar

from sqlalchemy.exc import DBAPIError, DisconnectionError, TimeoutError
from sqlalchemy.ext.asyncio import AsyncSession

from kitakita.config import settings
from kitakita.core.errors import StorageUnavailable
from kitakita.logging_config import get_logger

logger = get_logger(__name__)

T = TypeVar("T")

# Infrastructure failures. IntegrityError is a DBAPIError too but signals a
# constraint outcome, so callers handle it before it reaches this layer.
TRANSIENT_ERRORS = (DBAPIError, DisconnectionError, TimeoutError, OSError)


async def with_storage_retry(
    db: AsyncSession,
    operation: Callable[[], Awaitable[T]],
    *,
    name: str,
) -> T:
    """Run a store operation, retrying on transient storage errors.

    The session is rolled back before each retry so the operation starts
    from a clean transaction. After ``settings.storage_retry_attempts``
    retries the failure surfaces as ``StorageUnavailable``.

    Args:
        db: Session the operation uses.
        operation: Zero-argument coroutine function performing the work.
        name: Operation name for logging.

    Returns:
        Whatever the operation returns.

    Raises:
        StorageUnavailable: If every attempt failed with a transient error.
    """
    attempts = settings.storage_retry_attempts + 1

    for attempt in range(1, attempts + 1):
        try:
            return await operation()
        except TRANSIENT_ERRORS as e:
            await _safe_rollback(db)
            if attempt == attempts:
                logger.error(
                    "Storage operation failed",
                    operation=name,
                    attempts=attempt,
                    error=str(e),
                )
                raise StorageUnavailable(f"{name} failed: storage unavailable") from e
            logger.warning(
                "Storage operation failed, retrying",
                operation=name,
                attempt=attempt,
                error=str(e),
            )
            await asyncio.sleep(settings.storage_retry_backoff_seconds)

    raise AssertionError("unreachable")


async def _safe_rollback(db: AsyncSession) -> None:
    try:
        await db.rollback()
    except TRANSIENT_ERRORS:
        logger.warning("Rollback failed after storage error", exc_info=True)
