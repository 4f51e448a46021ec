"""
Bounded retry with exponential backoff for record store operations.

Retried (transient):
- sqlite3.OperationalError: locked/busy database, disk I/O hiccups

Not retried (permanent):
- any other sqlite3.DatabaseError: schema or integrity problems
"""

import asyncio
import sqlite3
from typing import Awaitable, Callable, TypeVar
from litestar.types.protocols import Logger

from realitypatch.errors import PersistenceError

T = TypeVar("T")


def backoff_seconds(attempt: int, base: float, maximum: float) -> float:
    """Delay before retry number `attempt` (1-based)."""
    return min(base * (2 ** (attempt - 1)), maximum)


async def with_retries(
    operation: Callable[[], Awaitable[T]],
    description: str,
    logger: Logger,
    max_retries: int = 3,
    backoff_base: float = 0.1,
    backoff_max: float = 2.0,
) -> T:
    for attempt in range(max_retries + 1):
        try:
            return await operation()
        except sqlite3.OperationalError as e:
            if attempt < max_retries:
                delay = backoff_seconds(attempt + 1, backoff_base, backoff_max)
                logger.warning(
                    "Store %s transient failure, retry in %.2fs (%d/%d): %s",
                    description,
                    delay,
                    attempt + 1,
                    max_retries,
                    e,
                )
                await asyncio.sleep(delay)
                continue

            logger.error("Store %s exhausted retries: %s", description, e)
            raise PersistenceError(
                f"Record store unavailable during {description}", retryable=True
            ) from e
        except sqlite3.DatabaseError as e:
            logger.error("Store %s failed permanently: %s", description, e)
            raise PersistenceError(
                f"Record store rejected {description}", retryable=False
            ) from e

    # Unreachable: the loop either returns or raises
    raise PersistenceError(f"Record store unavailable during {description}", retryable=True)
