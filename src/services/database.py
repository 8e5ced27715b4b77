"""asyncpg connection pool for the sync engine.

One pool per process, created at startup and drained at shutdown.  Every
helper runs inside a transaction so multi-statement writes stay atomic.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator

import asyncpg

from src.config import Settings, get_settings

logger = logging.getLogger("guardianview.db")

# Module-level connection pool, initialized once at startup
_pool: asyncpg.Pool | None = None

# Tables owned by the sync engine.  The campers table belongs to the
# surrounding application and is only read/updated here.
SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS glucose_readings (
    id BIGSERIAL PRIMARY KEY,
    camper_id INTEGER NOT NULL REFERENCES campers(id) ON DELETE CASCADE,
    value INTEGER NOT NULL,
    trend TEXT,
    reading_time TIMESTAMPTZ NOT NULL,
    UNIQUE (camper_id, reading_time)
);

CREATE INDEX IF NOT EXISTS idx_readings_camper_time
    ON glucose_readings (camper_id, reading_time DESC);

CREATE TABLE IF NOT EXISTS alerts (
    id BIGSERIAL PRIMARY KEY,
    camper_id INTEGER NOT NULL REFERENCES campers(id) ON DELETE CASCADE,
    type TEXT NOT NULL,
    value INTEGER,
    acknowledged_by INTEGER,
    acknowledged_at TIMESTAMPTZ,
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
);

CREATE INDEX IF NOT EXISTS idx_alerts_camper
    ON alerts (camper_id, acknowledged_at);
"""


async def init_pool(settings: Settings | None = None) -> asyncpg.Pool:
    """Create the asyncpg connection pool. Call once at startup."""
    global _pool
    s = settings or get_settings()
    _pool = await asyncpg.create_pool(
        s.database_url,
        min_size=s.db_pool_min_size,
        max_size=s.db_pool_max_size,
        command_timeout=30,
    )
    logger.info(
        "Database pool initialized (min=%d, max=%d)", s.db_pool_min_size, s.db_pool_max_size
    )
    return _pool


async def close_pool() -> None:
    """Drain the pool. Call at shutdown."""
    global _pool
    if _pool:
        await _pool.close()
        _pool = None
        logger.info("Database pool closed")


def get_pool() -> asyncpg.Pool:
    if _pool is None:
        raise RuntimeError("Database pool not initialized, call init_pool() first")
    return _pool


@asynccontextmanager
async def get_connection() -> AsyncGenerator[asyncpg.Connection, None]:
    """Acquire a pooled connection inside a transaction.

    Usage::

        async with get_connection() as conn:
            await conn.execute("DELETE FROM glucose_readings WHERE camper_id = $1", 7)
    """
    pool = get_pool()
    async with pool.acquire() as conn:
        async with conn.transaction():
            yield conn


async def ensure_schema() -> None:
    """Create the engine's own tables if they do not exist yet."""
    async with get_connection() as conn:
        await conn.execute(SCHEMA_SQL)
    logger.info("Database schema verified")


async def execute(query: str, *args: Any) -> str:
    """Execute a single statement and return its status string."""
    async with get_connection() as conn:
        return await conn.execute(query, *args)


async def fetch(query: str, *args: Any) -> list[asyncpg.Record]:
    async with get_connection() as conn:
        return await conn.fetch(query, *args)


async def fetchrow(query: str, *args: Any) -> asyncpg.Record | None:
    async with get_connection() as conn:
        return await conn.fetchrow(query, *args)


async def fetchval(query: str, *args: Any) -> Any:
    async with get_connection() as conn:
        return await conn.fetchval(query, *args)
