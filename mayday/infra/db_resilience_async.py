# mayday/infra/db_resilience_async.py
"""
Retry on transient database errors (asyncpg).

Only wrap idempotent work: reads, compare-and-swap updates and upserts.
A retried CAS either wins once or observes the row already moved.
"""
from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from functools import wraps
from typing import AsyncIterator, Callable, Iterator

import asyncpg

from mayday.infra.db_async import get_pool
from mayday.infra.logging_config import get_logger

logger = get_logger(__name__)

_TRANSIENT_TYPES = (
    asyncpg.PostgresConnectionError,
    asyncpg.TooManyConnectionsError,
    asyncpg.DeadlockDetectedError,
    asyncpg.SerializationError,
    ConnectionError,
    asyncio.TimeoutError,
)

_TRANSIENT_WORDS = ("connection", "timeout", "closed", "network", "deadlock", "too many connections")


def is_transient_error(exc: Exception) -> bool:
    """Connection loss, pool exhaustion, deadlocks and serialization conflicts are worth a retry."""
    if isinstance(exc, _TRANSIENT_TYPES):
        return True
    if isinstance(exc, asyncpg.PostgresError):
        # Constraint violations and SQL errors repeat on every attempt
        return False
    message = str(exc).lower()
    return any(word in message for word in _TRANSIENT_WORDS)


def _delays(max_retries: int, initial: float, factor: float, cap: float) -> Iterator[float]:
    delay = initial
    for _ in range(max_retries):
        yield delay
        delay = min(delay * factor, cap)


async def _with_retries(what: str, attempt: Callable, max_retries: int,
                        initial_delay: float, backoff_factor: float, max_delay: float):
    delays = _delays(max_retries, initial_delay, backoff_factor, max_delay)
    tries = 0
    while True:
        tries += 1
        try:
            return await attempt()
        except Exception as exc:
            if not is_transient_error(exc):
                raise
            delay = next(delays, None)
            if delay is None:
                logger.error(f"{what}: giving up after {tries} attempts: {exc}")
                raise
            logger.warning(f"{what}: transient error on attempt {tries} ({exc}); retrying in {delay:.2f}s")
            await asyncio.sleep(delay)


def retry_on_transient_error(
    max_retries: int = 3,
    initial_delay: float = 0.1,
    backoff_factor: float = 2.0,
    max_delay: float = 5.0,
):
    """Decorator: rerun an async repository method when the database hiccups."""
    def decorator(func: Callable) -> Callable:
        @wraps(func)
        async def wrapper(*args, **kwargs):
            return await _with_retries(
                func.__qualname__,
                lambda: func(*args, **kwargs),
                max_retries, initial_delay, backoff_factor, max_delay,
            )
        return wrapper
    return decorator


@asynccontextmanager
async def safe_db_conn(autocommit: bool = True) -> AsyncIterator[asyncpg.Connection]:
    """
    Pooled connection whose acquisition is retried on transient errors.

    Errors raised inside the ``async with`` body propagate unchanged.
    """
    pool = get_pool()
    conn = await _with_retries("acquire connection", pool.acquire, 3, 0.1, 2.0, 5.0)
    try:
        if autocommit:
            yield conn
        else:
            async with conn.transaction():
                yield conn
    finally:
        await pool.release(conn)
