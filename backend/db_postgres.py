"""
Postgres database connection utility.
Used by the health probe for connectivity checks and row counts.
"""
import atexit
import logging
import threading
from typing import Any, Optional

import psycopg2
import psycopg2.pool
from psycopg2.extras import RealDictCursor

from config import POSTGRES_CONNECTION_STRING

logger = logging.getLogger("db_lifecycle")

# ---------------------------------------------------------------------------
# Connection pool, shared across probe threads
# ---------------------------------------------------------------------------
# Per-table counts run concurrently, so max must cover the critical table set.
_pool: Optional[psycopg2.pool.ThreadedConnectionPool] = None
_pool_lock = threading.Lock()
_POOL_MIN = 1
_POOL_MAX = 10


def _get_pool() -> psycopg2.pool.ThreadedConnectionPool:
    """Return the singleton connection pool, creating it lazily on first call."""
    global _pool
    if _pool is not None:
        return _pool
    with _pool_lock:
        if _pool is None:
            _pool = psycopg2.pool.ThreadedConnectionPool(
                _POOL_MIN,
                _POOL_MAX,
                POSTGRES_CONNECTION_STRING,
            )
            # Close the pool cleanly when the process exits
            atexit.register(_pool.closeall)
            logger.info(f"[db_postgres] Connection pool created (min={_POOL_MIN}, max={_POOL_MAX})")
    return _pool


def get_db_connection():
    """
    Borrow a connection from the pool.

    IMPORTANT: You MUST call `return_db_connection(conn)` (or use the
    execute_query helper) when you're done; borrowed connections are not
    auto-returned.
    """
    pool = _get_pool()
    try:
        return pool.getconn()
    except psycopg2.pool.PoolError as e:
        logger.error(f"[db_postgres] Pool exhausted, all {_POOL_MAX} connections in use: {e}")
        raise


def return_db_connection(conn, error: bool = False) -> None:
    """Return a borrowed connection to the pool."""
    pool = _get_pool()
    try:
        pool.putconn(conn, close=error)
    except psycopg2.pool.PoolError as e:
        logger.warning(f"[db_postgres] Could not return connection to pool: {e}")


def execute_query(query: Any, params: Optional[tuple] = None) -> list:
    """Run a read-only query and return its rows. Borrows + auto-returns a pooled connection."""
    conn = get_db_connection()
    error = False
    try:
        with conn.cursor(cursor_factory=RealDictCursor) as cur:
            cur.execute(query, params)
            rows = cur.fetchall()
            conn.rollback()
            return rows
    except psycopg2.Error as e:
        error = True
        logger.error(f"[db_postgres] Query failed: {e}")
        raise
    finally:
        return_db_connection(conn, error=error)
