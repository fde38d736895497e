"""Database layer: a PostgreSQL-backed key-value store for persisted trainer state."""

from contextlib import contextmanager

import psycopg

from config import get_database_url

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS kv_store (
    key TEXT PRIMARY KEY,
    value TEXT NOT NULL,
    updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
)
"""


def get_connection_string() -> str:
    """Get database connection string from environment."""
    return get_database_url()


@contextmanager
def get_connection():
    """Context manager for database connections."""
    conn = psycopg.connect(get_connection_string())
    try:
        yield conn
        conn.commit()
    except Exception:
        conn.rollback()
        raise
    finally:
        conn.close()


def ensure_schema(conn: psycopg.Connection) -> None:
    with conn.cursor() as cur:
        cur.execute(SCHEMA_SQL)


def kv_get(conn: psycopg.Connection, key: str) -> str | None:
    """Fetch the stored value for key."""
    with conn.cursor() as cur:
        cur.execute("SELECT value FROM kv_store WHERE key = %s", (key,))
        row = cur.fetchone()
    return row[0] if row else None


def kv_set(conn: psycopg.Connection, key: str, value: str) -> None:
    """Insert or replace the value for key."""
    with conn.cursor() as cur:
        cur.execute(
            """
            INSERT INTO kv_store (key, value)
            VALUES (%s, %s)
            ON CONFLICT (key) DO UPDATE SET
                value = EXCLUDED.value,
                updated_at = NOW()
            """,
            (key, value),
        )


class PostgresKeyValueStore:
    """Key-value store with one short transaction per call."""

    def __init__(self):
        self._schema_ready = False

    def _ensure(self, conn: psycopg.Connection) -> None:
        if not self._schema_ready:
            ensure_schema(conn)
            self._schema_ready = True

    def get(self, key: str) -> str | None:
        with get_connection() as conn:
            self._ensure(conn)
            return kv_get(conn, key)

    def set(self, key: str, value: str) -> None:
        with get_connection() as conn:
            self._ensure(conn)
            kv_set(conn, key, value)


class MemoryKeyValueStore:
    """In-process store for tests and the API when no database is configured."""

    def __init__(self, initial: dict[str, str] | None = None):
        self.data: dict[str, str] = dict(initial or {})

    def get(self, key: str) -> str | None:
        return self.data.get(key)

    def set(self, key: str, value: str) -> None:
        self.data[key] = value
