"""Database access layer using psycopg2.

Provides:
- get_conn(): Get a database connection from DATABASE_URL
- txn(): Context manager for short, safe transactions
- fetchone/fetchall: Query helpers

Connection-level failures (server down, connection dropped mid-transaction)
surface as StoreUnavailableError so callers can tell them apart from
constraint or programming errors.
"""

import os
from contextlib import contextmanager
from typing import Any, Iterator, Sequence

import psycopg2
from psycopg2.extensions import connection as PgConnection, cursor as PgCursor


class StoreUnavailableError(RuntimeError):
    """Raised when the database cannot be reached or the connection is lost."""

    pass


def get_conn() -> PgConnection:
    """Get a new database connection from DATABASE_URL.

    Returns:
        psycopg2 connection object.

    Raises:
        RuntimeError: If DATABASE_URL is not set.
        StoreUnavailableError: On connection failure.
    """
    dsn = os.environ.get("DATABASE_URL")
    if not dsn:
        raise RuntimeError("DATABASE_URL environment variable not set")
    try:
        return psycopg2.connect(dsn)
    except psycopg2.OperationalError as e:
        raise StoreUnavailableError(f"database connection failed: {type(e).__name__}") from e


@contextmanager
def txn(conn: PgConnection | None = None) -> Iterator[PgCursor]:
    """Context manager for a short, safe transaction.

    If conn is None, creates a new connection that is closed on exit.
    Commits on successful exit, rolls back on exception.

    Args:
        conn: Optional existing connection. If None, creates new one.

    Yields:
        Cursor for executing queries within the transaction.

    Raises:
        StoreUnavailableError: If the connection is lost inside the block.

    Example:
        with txn() as cur:
            cur.execute("INSERT INTO t (x) VALUES (%s)", (1,))
    """
    owns_conn = conn is None
    if owns_conn:
        conn = get_conn()

    try:
        with conn.cursor() as cur:
            yield cur
        conn.commit()
    except (psycopg2.OperationalError, psycopg2.InterfaceError) as e:
        _safe_rollback(conn)
        raise StoreUnavailableError(f"database unavailable: {type(e).__name__}") from e
    except Exception:
        conn.rollback()
        raise
    finally:
        if owns_conn:
            conn.close()


def _safe_rollback(conn: PgConnection) -> None:
    """Roll back a connection that may already be closed."""
    if conn.closed:
        return
    try:
        conn.rollback()
    except (psycopg2.OperationalError, psycopg2.InterfaceError):
        pass


def fetchone(
    cur: PgCursor,
    query: str,
    params: Sequence[Any] | None = None,
) -> tuple[Any, ...] | None:
    """Execute query and fetch one row.

    Args:
        cur: Database cursor.
        query: SQL query with %s placeholders.
        params: Query parameters.

    Returns:
        Single row tuple or None if no results.
    """
    cur.execute(query, params)
    return cur.fetchone()


def fetchall(
    cur: PgCursor,
    query: str,
    params: Sequence[Any] | None = None,
) -> list[tuple[Any, ...]]:
    """Execute query and fetch all rows.

    Args:
        cur: Database cursor.
        query: SQL query with %s placeholders.
        params: Query parameters.

    Returns:
        List of row tuples.
    """
    cur.execute(query, params)
    return cur.fetchall()
