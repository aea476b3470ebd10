# mayday/infra/db_async.py
"""
asyncpg pool shared by the repositories, the migration runner and the
seed script. The process host opens it in its lifespan.
"""
from __future__ import annotations

from contextlib import asynccontextmanager
from typing import AsyncIterator

import asyncpg

from mayday.config import settings
from mayday.infra.logging_config import get_logger

logger = get_logger(__name__)

_pool: asyncpg.Pool | None = None


def _pool_options() -> dict:
    return {
        "dsn": settings.database_dsn,
        "min_size": settings.pg_pool_min,
        "max_size": settings.pg_pool_max,
        "timeout": settings.pg_connect_timeout,
        "command_timeout": 60,
        "server_settings": {
            "application_name": "mayday_dispatch",
            "statement_timeout": str(settings.pg_statement_timeout_ms),
            "timezone": "UTC",
        },
    }


async def init_pool() -> None:
    global _pool

    if _pool is not None:
        return
    _pool = await asyncpg.create_pool(**_pool_options())
    logger.info(f"Database pool ready: min={settings.pg_pool_min}, max={settings.pg_pool_max}")


async def close_pool() -> None:
    global _pool

    pool, _pool = _pool, None
    if pool is not None:
        await pool.close()
        logger.info("Database pool closed")


def get_pool() -> asyncpg.Pool:
    if _pool is None:
        raise RuntimeError("Database pool is not open; init_pool() runs in the app lifespan")
    return _pool


@asynccontextmanager
async def db_conn(autocommit: bool = True) -> AsyncIterator[asyncpg.Connection]:
    """
    Borrow a pooled connection.

    With autocommit=False the block is one transaction: committed on a
    clean exit, rolled back if it raises.
    """
    async with get_pool().acquire() as conn:
        if autocommit:
            yield conn
        else:
            async with conn.transaction():
                yield conn
