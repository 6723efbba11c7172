"""Database helpers for persisting crawler state."""

import logging
from contextlib import contextmanager
from typing import Any, Optional

from psycopg2 import extras, pool

from pages_worker.core.config import get_settings

logger = logging.getLogger(__name__)

_connection_pool: Optional[pool.SimpleConnectionPool] = None


def init_pool(minconn: int = 1, maxconn: int = 5) -> pool.SimpleConnectionPool:
    """Create the process-wide connection pool on first use."""
    global _connection_pool
    if _connection_pool is None:
        settings = get_settings()
        if not settings.database_url:
            raise RuntimeError("DATABASE_URL is required for database connections")
        _connection_pool = pool.SimpleConnectionPool(
            minconn,
            maxconn,
            dsn=settings.database_url,
            connect_timeout=10,
        )
        logger.info("Opened state database pool (%d-%d connections)", minconn, maxconn)
    return _connection_pool


@contextmanager
def get_connection():
    """Borrow a connection from the pool and always hand it back."""
    pg_pool = init_pool()
    conn = pg_pool.getconn()
    try:
        yield conn
    finally:
        pg_pool.putconn(conn)


_CREATE_TABLE = """
CREATE TABLE IF NOT EXISTS crawler_state (
    store_key TEXT PRIMARY KEY,
    value JSONB NOT NULL,
    updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
);
"""

_UPSERT_STATE = """
INSERT INTO crawler_state (
    store_key,
    value,
    updated_at
) VALUES (
    %(store_key)s,
    %(value)s,
    NOW()
)
ON CONFLICT (store_key) DO UPDATE SET
    value = EXCLUDED.value,
    updated_at = NOW();
"""

_SELECT_STATE = "SELECT value FROM crawler_state WHERE store_key = %(store_key)s;"


def ensure_schema() -> None:
    with get_connection() as conn:
        with conn.cursor() as cur:
            cur.execute(_CREATE_TABLE, {})
        conn.commit()


def save_state(store_key: str, value: Any) -> None:
    """Persist a JSON value under ``store_key``, replacing the previous one."""
    if not store_key:
        raise ValueError("store_key is required to save state")

    with get_connection() as conn:
        with conn.cursor() as cur:
            cur.execute(_UPSERT_STATE, {"store_key": store_key, "value": extras.Json(value)})
        conn.commit()
        logger.debug("Saved state %s", store_key)


def load_state(store_key: str) -> Optional[Any]:
    with get_connection() as conn:
        with conn.cursor() as cur:
            cur.execute(_SELECT_STATE, {"store_key": store_key})
            row = cur.fetchone()
    return row[0] if row else None
