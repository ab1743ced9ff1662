
# db.py
from __future__ import annotations

from contextlib import contextmanager
from typing import Iterator

import psycopg2
import psycopg2.extras
from psycopg2.extensions import connection as PGConn
from psycopg2.pool import ThreadedConnectionPool

from settings import settings

# alembic head this build expects; /readyz fails on any other revision
MIGRATION_REVISION = "0002_webhook_events"

_pool: ThreadedConnectionPool | None = None

# Attempt writes take row locks; keep them short so a stuck request cannot
# hold up webhook deliveries for the same group.
_SESSION_SETUP = (
    "SET statement_timeout = '5000ms';",
    "SET lock_timeout = '3000ms';",
    "SET idle_in_transaction_session_timeout = '5000ms';",
    "SET application_name = 'bilvo_payments';",
)


def init_pool() -> None:
    """
    Initialize the PostgreSQL connection pool.
    Called once at app startup (lifespan), lazily otherwise.
    """
    global _pool
    if _pool is not None:
        return

    dsn = (settings.DATABASE_URL or "").strip()
    if not dsn:
        raise RuntimeError("DATABASE_URL is not set.")

    psycopg2.extras.register_uuid()
    _pool = ThreadedConnectionPool(minconn=1, maxconn=10, dsn=dsn, connect_timeout=5)


def close_pool() -> None:
    global _pool
    if _pool is not None:
        _pool.closeall()
        _pool = None


@contextmanager
def get_conn() -> Iterator[PGConn]:
    """
    One transaction per block: commits on success, rolls back on error.
    """
    if _pool is None:
        init_pool()

    conn = _pool.getconn()
    try:
        with conn.cursor() as cur:
            for stmt in _SESSION_SETUP:
                cur.execute(stmt)

        yield conn
        conn.commit()

    except Exception:
        conn.rollback()
        raise

    finally:
        _pool.putconn(conn)


def db_ping() -> tuple[bool, str | None]:
    try:
        with get_conn() as conn:
            with conn.cursor() as cur:
                cur.execute("SELECT 1;")
                cur.fetchone()
        return True, None
    except Exception as exc:
        return False, f"{type(exc).__name__}: {exc}"


def migrations_applied() -> bool:
    try:
        with get_conn() as conn:
            with conn.cursor() as cur:
                cur.execute("SELECT to_regclass('public.alembic_version');")
                if not cur.fetchone()[0]:
                    return False
                cur.execute("SELECT version_num FROM alembic_version;")
                return [r[0] for r in cur.fetchall()] == [MIGRATION_REVISION]
    except Exception:
        return False
