# chatrelay/infra/db_resilience_async.py
"""
Async database resilience utilities.
Retry on transient asyncpg errors.
"""
from __future__ import annotations
import asyncio
from typing import AsyncIterator, Callable
from contextlib import AsyncExitStack, asynccontextmanager
from functools import wraps

import asyncpg
from chatrelay.infra import db_async
from chatrelay.infra.logging_config import get_logger

logger = get_logger(__name__)


def is_transient_error(exc: Exception) -> bool:
    """
    Check if database error is transient (should retry).

    Transient errors:
    - Connection errors / server closed connection
    - Too many connections
    - Deadlock
    """
    if isinstance(exc, (
        asyncpg.PostgresConnectionError,
        asyncpg.TooManyConnectionsError,
        asyncpg.DeadlockDetectedError,
        ConnectionError,
        asyncio.TimeoutError,
    )):
        return True

    if isinstance(exc, asyncpg.PostgresError):
        return False

    error_message = str(exc).lower()
    transient_patterns = [
        "connection reset",
        "server closed",
        "too many connections",
        "timeout",
    ]
    return any(pattern in error_message for pattern in transient_patterns)


def retry_on_transient_error(
    max_retries: int = 3,
    initial_delay: float = 0.1,
    backoff_factor: float = 2.0,
    max_delay: float = 5.0
):
    """
    Decorator to retry an async function on transient database errors.

    Example:
        @retry_on_transient_error(max_retries=3)
        async def get_record(tenant_id: str, agent_id: str):
            async with db_conn() as conn:
                return await conn.fetchrow(...)
    """
    def decorator(func: Callable) -> Callable:
        @wraps(func)
        async def wrapper(*args, **kwargs):
            delay = initial_delay

            for attempt in range(max_retries + 1):
                try:
                    return await func(*args, **kwargs)
                except Exception as exc:
                    if not is_transient_error(exc):
                        raise

                    if attempt >= max_retries:
                        logger.error(f"Max retries ({max_retries}) exceeded in {func.__name__}: {exc}")
                        raise

                    logger.warning(
                        f"Transient error in {func.__name__} (attempt {attempt + 1}/{max_retries}): {exc}. "
                        f"Retrying in {delay:.2f}s..."
                    )
                    await asyncio.sleep(delay)
                    delay = min(delay * backoff_factor, max_delay)

        return wrapper
    return decorator


@asynccontextmanager
async def safe_db_conn(autocommit: bool = True) -> AsyncIterator[asyncpg.Connection]:
    """
    Database connection with retry on transient errors while acquiring.

    Usage:
        async with safe_db_conn() as conn:
            row = await conn.fetchrow("SELECT ...", tenant_id)

    Only acquisition is retried; errors raised inside the block propagate.
    """
    max_retries = 3
    delay = 0.1

    async with AsyncExitStack() as stack:
        for attempt in range(max_retries + 1):
            try:
                conn = await stack.enter_async_context(db_async.db_conn(autocommit=autocommit))
                break
            except Exception as exc:
                if not is_transient_error(exc) or attempt >= max_retries:
                    raise
                logger.warning(
                    f"Transient error getting connection (attempt {attempt + 1}/{max_retries}): {exc}. "
                    f"Retrying in {delay:.2f}s..."
                )
                await asyncio.sleep(delay)
                delay = min(delay * 2.0, 5.0)

        yield conn
