"""PostgreSQL access helpers (psycopg2, raw SQL).

Provides:
- get_conn(): connection from DATABASE_URL
- txn(): commit-or-rollback transaction scope yielding a cursor
- row_to_dict()/rows_to_dicts(): map tuple rows by cursor column names
- for_update(): SELECT ... FOR UPDATE returning a single row
"""

import os
from contextlib import contextmanager
from typing import Any, Iterator, Sequence

import psycopg2
from psycopg2.extensions import connection as PgConnection, cursor as PgCursor


def get_conn() -> PgConnection:
    """Open a new connection using DATABASE_URL.

    Raises:
        RuntimeError: If DATABASE_URL is not set.
        psycopg2.Error: On connection failure.
    """
    dsn = os.environ.get("DATABASE_URL")
    if not dsn:
        raise RuntimeError("DATABASE_URL environment variable not set")
    return psycopg2.connect(dsn)


@contextmanager
def txn(conn: PgConnection | None = None) -> Iterator[PgCursor]:
    """Run a short transaction and yield its cursor.

    Every financial write in the engine happens inside one of these scopes:
    the whole block commits together or rolls back together. Keep them short
    and never call the payment gateway from inside one.

    Args:
        conn: Existing connection to reuse. When None a new connection is
            opened and closed on exit.

    Yields:
        Cursor bound to the transaction.
    """
    owns_conn = conn is None
    if owns_conn:
        conn = get_conn()

    try:
        with conn.cursor() as cur:
            yield cur
        conn.commit()
    except Exception:
        conn.rollback()
        raise
    finally:
        if owns_conn:
            conn.close()


def row_to_dict(cur: PgCursor, row: Sequence[Any] | None) -> dict[str, Any] | None:
    """Map a tuple row to a dict keyed by the cursor's column names."""
    if row is None:
        return None
    columns = [col[0] for col in cur.description]
    return dict(zip(columns, row))


def rows_to_dicts(cur: PgCursor, rows: Sequence[Sequence[Any]]) -> list[dict[str, Any]]:
    """Map many tuple rows; see row_to_dict()."""
    if not rows:
        return []
    columns = [col[0] for col in cur.description]
    return [dict(zip(columns, row)) for row in rows]


def for_update(
    cur: PgCursor,
    query: str,
    params: Sequence[Any] | None = None,
    *,
    nowait: bool = False,
    skip_locked: bool = False,
) -> tuple[Any, ...] | None:
    """Execute a SELECT with a FOR UPDATE suffix and fetch one row.

    The lock is held until the surrounding txn() commits or rolls back.

    Args:
        cur: Cursor inside a transaction.
        query: SELECT statement without a locking clause.
        params: Query parameters.
        nowait: Fail immediately if the row is already locked.
        skip_locked: Skip rows locked by other transactions.

    Raises:
        ValueError: If both nowait and skip_locked are requested.
    """
    if nowait and skip_locked:
        raise ValueError("Cannot use both nowait and skip_locked")

    suffix = " FOR UPDATE"
    if nowait:
        suffix += " NOWAIT"
    elif skip_locked:
        suffix += " SKIP LOCKED"

    cur.execute(query.rstrip().rstrip(";") + suffix, params)
    return cur.fetchone()
