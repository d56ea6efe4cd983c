"""Postgres access with owner context.

Every request gets a connection where ``app.current_owner_id`` is set
transaction-locally, so Row-Level Security policies (when enabled on the sync
tables) see the same identity that the queries already filter on.

JSONB columns are decoded to Python objects by a codec registered on each
pooled connection.
"""

from __future__ import annotations

import json
import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator

import asyncpg

from tandem.config import Settings, get_settings

logger = logging.getLogger("tandem.db")

# Failures that mean "the store is unavailable or rejected the statement"
DB_ERRORS: tuple[type[Exception], ...] = (
    asyncpg.PostgresError,
    asyncpg.InterfaceError,
    OSError,
)

# Module-level connection pool, initialized once at app startup
_pool: asyncpg.Pool | None = None


async def _init_connection(conn: asyncpg.Connection) -> None:
    await conn.set_type_codec(
        "jsonb",
        encoder=json.dumps,
        decoder=json.loads,
        schema="pg_catalog",
    )


async def init_pool(settings: Settings | None = None) -> asyncpg.Pool:
    """Create the asyncpg connection pool. Call once at app startup."""
    global _pool
    s = settings or get_settings()
    _pool = await asyncpg.create_pool(
        s.database_url,
        min_size=s.db_pool_min_size,
        max_size=s.db_pool_max_size,
        command_timeout=s.db_command_timeout,
        init=_init_connection,
    )
    logger.info(
        "Database pool initialized (min=%d, max=%d)",
        s.db_pool_min_size,
        s.db_pool_max_size,
    )
    return _pool


async def close_pool() -> None:
    """Drain the pool. Call at app shutdown."""
    global _pool
    if _pool:
        await _pool.close()
        _pool = None
        logger.info("Database pool closed")


def get_pool() -> asyncpg.Pool:
    if _pool is None:
        raise RuntimeError("Database pool not initialized; call init_pool() first")
    return _pool


@asynccontextmanager
async def get_connection(
    owner_id: str | None = None,
) -> AsyncGenerator[asyncpg.Connection, None]:
    """Acquire a connection inside a transaction with owner context set.

    Usage::

        async with get_connection(owner_id=user.owner_id) as conn:
            rows = await conn.fetch(
                "SELECT * FROM sync_entities WHERE owner_id = $1", user.owner_id
            )

    ``set_config(..., true)`` is transaction-local, so the owner context
    disappears automatically when the connection is returned to the pool.
    """
    pool = get_pool()
    async with pool.acquire() as conn:
        async with conn.transaction():
            if owner_id:
                await conn.execute(
                    "SELECT set_config('app.current_owner_id', $1, true)", owner_id
                )

            yield conn


async def execute(query: str, *args: Any, owner_id: str | None = None) -> str:
    """Execute a single statement with owner context and return status."""
    async with get_connection(owner_id=owner_id) as conn:
        return await conn.execute(query, *args)


async def fetchval(query: str, *args: Any, owner_id: str | None = None) -> Any:
    """Fetch a single value with owner context."""
    async with get_connection(owner_id=owner_id) as conn:
        return await conn.fetchval(query, *args)
