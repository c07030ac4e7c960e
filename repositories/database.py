# ============================================================================
# DATABASE CONNECTION POOL
# ============================================================================
# EPOCH: 1 - JOB CORE
# STATUS: Core - Async PostgreSQL connection management
# PURPOSE: Connection pooling and transaction helpers for psycopg3 async
# CREATED: 12 OCT 2026
# ============================================================================
"""
Database Connection Pool

Manages async PostgreSQL connections using psycopg3 and psycopg_pool.
Singleton pattern ensures one pool per process.

Supports two authentication methods:
1. Managed Identity (Azure) - USE_MANAGED_IDENTITY=true
2. Password auth (local dev) - DATABASE_URL or POSTGRES_* vars

Transactions:
    Repository methods take an optional `conn`. Passing the connection
    yielded by transaction() makes several repository calls commit or roll
    back together:

        async with transaction(pool) as conn:
            job = await job_repo.create(job, conn=conn)
            await saga_repo.append(action, conn=conn)
"""

import os
import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

from psycopg import AsyncConnection
from psycopg import sql as psycopg_sql
from psycopg.rows import dict_row
from psycopg_pool import AsyncConnectionPool

logger = logging.getLogger(__name__)

# Global pool instance
_pool: Optional[AsyncConnectionPool] = None


def get_connection_string() -> str:
    """
    Get database connection string from environment.

    Priority:
    1. Managed Identity (if USE_MANAGED_IDENTITY=true)
    2. DATABASE_URL environment variable
    3. Individual POSTGRES_* components
    """
    use_mi = os.environ.get("USE_MANAGED_IDENTITY", "false").lower() == "true"

    if use_mi:
        from infrastructure.auth import get_postgres_connection_string
        logger.info("Using Managed Identity for PostgreSQL authentication")
        return get_postgres_connection_string()

    if url := os.environ.get("DATABASE_URL"):
        return url

    host = os.environ.get("POSTGRES_HOST", "localhost")
    port = os.environ.get("POSTGRES_PORT", "5432")
    name = os.environ.get("POSTGRES_DB", "postgres")
    user = os.environ.get("POSTGRES_USER", "postgres")
    password = os.environ.get("POSTGRES_PASSWORD", "")
    sslmode = os.environ.get("POSTGRES_SSLMODE", "require")

    return f"postgresql://{user}:{password}@{host}:{port}/{name}?sslmode={sslmode}"


def mask_conninfo(conninfo: str) -> str:
    """Strip credentials before logging a connection string."""
    if "@" in conninfo:
        return conninfo.split("@")[-1]
    if "password=" in conninfo:
        head, _, tail = conninfo.partition("password=")
        rest = tail.split(" ", 1)[1] if " " in tail else ""
        return f"{head}password=*** {rest}".strip()
    return conninfo


async def init_pool(
    min_size: int = 2,
    max_size: int = 10,
    connection_string: Optional[str] = None,
) -> AsyncConnectionPool:
    """
    Initialize the global connection pool.

    Args:
        min_size: Minimum connections to maintain
        max_size: Maximum connections allowed (size for worker_count + 2)
        connection_string: Override connection string (defaults to env)
    """
    global _pool

    if _pool is not None:
        logger.warning("Pool already initialized, returning existing pool")
        return _pool

    conninfo = connection_string or get_connection_string()
    logger.info(f"Initializing connection pool: {mask_conninfo(conninfo)}")

    _pool = AsyncConnectionPool(
        conninfo=conninfo,
        min_size=min_size,
        max_size=max_size,
        open=False,
    )

    await _pool.open()
    logger.info(f"Connection pool opened (min={min_size}, max={max_size})")

    return _pool


async def get_pool() -> AsyncConnectionPool:
    """Get the global connection pool, initializing if needed."""
    global _pool

    if _pool is None:
        await init_pool()

    return _pool


async def close_pool() -> None:
    """Close the global connection pool."""
    global _pool

    if _pool is not None:
        await _pool.close()
        _pool = None
        logger.info("Connection pool closed")


@asynccontextmanager
async def use_connection(
    pool: AsyncConnectionPool,
    conn: Optional[AsyncConnection] = None,
) -> AsyncIterator[AsyncConnection]:
    """
    Yield the caller's connection, or borrow one from the pool.

    A borrowed connection commits when the block exits cleanly.
    """
    if conn is not None:
        conn.row_factory = dict_row
        yield conn
        return

    async with pool.connection() as borrowed:
        borrowed.row_factory = dict_row
        yield borrowed


@asynccontextmanager
async def transaction(pool: AsyncConnectionPool) -> AsyncIterator[AsyncConnection]:
    """
    Run a block in one database transaction.

    Commits on clean exit, rolls back if the block raises.
    """
    async with pool.connection() as conn:
        conn.row_factory = dict_row
        async with conn.transaction():
            yield conn


class DatabasePool:
    """
    Context manager for pool lifecycle.

    Usage:
        async with DatabasePool(max_size=8) as pool:
            worker_pool = WorkerPool(pool)
            ...
    """

    def __init__(
        self,
        min_size: int = 2,
        max_size: int = 10,
        connection_string: Optional[str] = None,
    ):
        self.min_size = min_size
        self.max_size = max_size
        self.connection_string = connection_string
        self._pool: Optional[AsyncConnectionPool] = None

    async def __aenter__(self) -> AsyncConnectionPool:
        self._pool = await init_pool(
            min_size=self.min_size,
            max_size=self.max_size,
            connection_string=self.connection_string,
        )
        return self._pool

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await close_pool()


# ============================================================================
# SCHEMA CONSTANTS
# ============================================================================

SCHEMA = "jobcore"

# Table identifiers; use with psycopg sql.SQL().format() for injection-safe queries
TABLE_JOB_RUN = psycopg_sql.Identifier(SCHEMA, "job_run")
TABLE_IDEMPOTENCY = psycopg_sql.Identifier(SCHEMA, "idempotency_key")
TABLE_SAGA_RUN = psycopg_sql.Identifier(SCHEMA, "saga_run")
TABLE_SAGA_ACTION = psycopg_sql.Identifier(SCHEMA, "saga_action")
TABLE_CHAT_THREAD = psycopg_sql.Identifier(SCHEMA, "chat_thread")
TABLE_CHAT_MESSAGE = psycopg_sql.Identifier(SCHEMA, "chat_message")
TABLE_CHAT_TURN = psycopg_sql.Identifier(SCHEMA, "chat_turn")


__all__ = [
    "get_connection_string",
    "mask_conninfo",
    "init_pool",
    "get_pool",
    "close_pool",
    "use_connection",
    "transaction",
    "DatabasePool",
    "SCHEMA",
    "TABLE_JOB_RUN",
    "TABLE_IDEMPOTENCY",
    "TABLE_SAGA_RUN",
    "TABLE_SAGA_ACTION",
    "TABLE_CHAT_THREAD",
    "TABLE_CHAT_MESSAGE",
    "TABLE_CHAT_TURN",
]
