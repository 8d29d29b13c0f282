# app/infra/db_async.py
"""
Async database connection pool using asyncpg.

JSON/JSONB columns are decoded to Python objects on every pooled
connection, so stores read and write plain dicts.
"""
from __future__ import annotations
import json
from typing import AsyncIterator
from contextlib import asynccontextmanager

import asyncpg
from app.config import settings
from app.infra.logging_config import get_logger

logger = get_logger(__name__)

# Global connection pool
_pool: asyncpg.Pool | None = None


async def _init_connection(conn: asyncpg.Connection) -> None:
    """Per-connection setup: JSON codecs."""
    for typename in ("json", "jsonb"):
        await conn.set_type_codec(
            typename,
            encoder=json.dumps,
            decoder=json.loads,
            schema="pg_catalog",
        )


async def init_pool() -> None:
    """Initialize connection pool on startup"""
    global _pool

    if _pool is not None:
        return

    logger.info("Initializing asyncpg connection pool")

    _pool = await asyncpg.create_pool(
        dsn=settings.database_url,
        min_size=settings.pg_pool_min,
        max_size=settings.pg_pool_max,
        command_timeout=60,
        init=_init_connection,
        server_settings={
            'application_name': 'dispatch_engine',
        }
    )

    logger.info(f"Connection pool created: min={settings.pg_pool_min}, max={settings.pg_pool_max}")


async def close_pool() -> None:
    """Close connection pool on shutdown"""
    global _pool

    if _pool is None:
        return

    logger.info("Closing connection pool")
    await _pool.close()
    _pool = None
    logger.info("Connection pool closed")


@asynccontextmanager
async def db_conn(autocommit: bool = True) -> AsyncIterator[asyncpg.Connection]:
    """
    Get database connection from pool (async).

    Usage:
        async with db_conn() as conn:
            row = await conn.fetchrow("SELECT doc FROM jobs WHERE id = $1", job_id)

    Args:
        autocommit: If True (default), no explicit transaction. If False, the
            block runs in a transaction committed on success, rolled back on error.

    Yields:
        asyncpg.Connection
    """
    if _pool is None:
        raise RuntimeError("Connection pool not initialized. Call init_pool() first.")

    conn = await _pool.acquire()

    try:
        if not autocommit:
            async with conn.transaction():
                yield conn
        else:
            yield conn
    finally:
        await _pool.release(conn)


async def get_pool() -> asyncpg.Pool:
    """Get the connection pool directly (for advanced usage)"""
    if _pool is None:
        raise RuntimeError("Connection pool not initialized")
    return _pool
