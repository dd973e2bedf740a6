"""
asyncpg connection pool shared by the Postgres store and the migration runner.

One pool per process. JSONB columns are decoded to Python objects on every
connection the pool opens.
"""

from __future__ import annotations

import json
import os
from contextlib import asynccontextmanager
from typing import Optional

import asyncpg
from dotenv import load_dotenv

load_dotenv()

_pool: Optional[asyncpg.Pool] = None

async def _init_connection(conn: asyncpg.Connection) -> None:
    await conn.set_type_codec(
        "jsonb",
        encoder=json.dumps,
        decoder=json.loads,
        schema="pg_catalog",
    )

async def get_pool(database_url: Optional[str] = None) -> asyncpg.Pool:
    """
    Get or create the database connection pool.

    Args:
        database_url: Connection string; falls back to DATABASE_URL.

    Returns:
        asyncpg.Pool: Database connection pool.

    Raises:
        RuntimeError: If no database URL is available.
    """
    global _pool
    if _pool is None:
        database_url = database_url or os.getenv("DATABASE_URL")
        if not database_url:
            raise RuntimeError("DATABASE_URL environment variable is not set")
        _pool = await asyncpg.create_pool(
            database_url, min_size=1, max_size=5, init=_init_connection
        )
    return _pool

async def close_pool() -> None:
    """Close the database connection pool."""
    global _pool
    if _pool is not None:
        await _pool.close()
        _pool = None

@asynccontextmanager
async def get_connection():
    """
    Get a database connection from the pool.

    Yields:
        asyncpg.Connection: Database connection.
    """
    pool = await get_pool()
    async with pool.acquire() as conn:
        yield conn
