# app/infra/db_async.py
"""
Process-wide asyncpg pool.

``init_pool`` / ``close_pool`` are called from the app lifespan and the
worker entry point; everything else borrows connections through ``db_conn``.
"""
from __future__ import annotations
from typing import AsyncIterator
from contextlib import asynccontextmanager

import asyncpg
from app.config import settings
from app.infra.logging_config import get_logger

logger = get_logger(__name__)

APPLICATION_NAME = "push_dispatch"

_pool: asyncpg.Pool | None = None


class PoolNotInitialized(RuntimeError):
    """A connection was requested before init_pool() or after close_pool()."""


def _pool_options(s=settings) -> dict:
    return {
        "min_size": s.pg_pool_min,
        "max_size": s.pg_pool_max,
        "timeout": s.pg_connect_timeout,
        "command_timeout": 60,
        "server_settings": {
            "application_name": APPLICATION_NAME,
            "statement_timeout": str(s.pg_statement_timeout_ms),
            "idle_in_transaction_session_timeout": str(s.pg_idle_in_tx_timeout_ms),
        },
    }


async def init_pool(dsn: str | None = None) -> None:
    """Create the pool once; later calls are no-ops."""
    global _pool
    if _pool is not None:
        return

    options = _pool_options()
    _pool = await asyncpg.create_pool(dsn=dsn or settings.database_dsn, **options)
    logger.info(f"asyncpg pool ready (min={options['min_size']}, max={options['max_size']})")


async def close_pool() -> None:
    global _pool
    pool, _pool = _pool, None
    if pool is not None:
        await pool.close()
        logger.info("asyncpg pool closed")


async def get_pool() -> asyncpg.Pool:
    if _pool is None:
        raise PoolNotInitialized("Connection pool not initialized. Call init_pool() first.")
    return _pool


@asynccontextmanager
async def db_conn(autocommit: bool = True) -> AsyncIterator[asyncpg.Connection]:
    """
    Borrow a pooled connection.

    With ``autocommit=False`` the body runs in a transaction that commits on
    normal exit and rolls back on any exception:

        async with db_conn(autocommit=False) as conn:
            await conn.execute(sql)
            await conn.execute("INSERT INTO schema_migrations(version) VALUES ($1)", version)
    """
    pool = await get_pool()
    async with pool.acquire() as conn:
        if autocommit:
            yield conn
        else:
            async with conn.transaction():
                yield conn
