"""Payment transactions repository (raw SQL, psycopg2).

Rows are returned as dicts keyed by column name. Status changes go through
transition_transaction(), a compare-and-set on the current status.
"""

from __future__ import annotations

from decimal import Decimal
from typing import Any, Iterable

from psycopg2.extensions import cursor as PgCursor

from rainbowpay.infra.db import for_update, row_to_dict, rows_to_dicts

_COLUMNS = """
    id, booking_id, payment_intent_id, source_id, provider_transaction_id,
    amount, currency, payment_method, provider, status, failure_reason,
    checkout_url, created_at, updated_at
"""


def insert_transaction(
    cur: PgCursor,
    *,
    booking_id: int,
    amount: Decimal,
    currency: str,
    payment_method: str,
    provider: str,
    payment_intent_id: str | None = None,
    source_id: str | None = None,
    checkout_url: str | None = None,
) -> dict[str, Any]:
    """Insert a new attempt in status 'pending'."""
    cur.execute(
        f"""
        INSERT INTO payment_transactions (
            booking_id, amount, currency, payment_method, provider,
            payment_intent_id, source_id, checkout_url, status
        )
        VALUES (%s, %s, %s, %s, %s, %s, %s, %s, 'pending')
        RETURNING {_COLUMNS}
        """,
        (
            booking_id,
            amount,
            currency,
            payment_method,
            provider,
            payment_intent_id,
            source_id,
            checkout_url,
        ),
    )
    return row_to_dict(cur, cur.fetchone())


def lock_transaction_by_gateway_ref(
    cur: PgCursor,
    lookup_ids: Iterable[str],
) -> dict[str, Any] | None:
    """Lock the transaction whose payment_intent_id OR source_id matches.

    Several candidate ids may be passed (a payment carries both its intent
    and its source); the oldest matching row wins.
    """
    ids = [i for i in lookup_ids if i]
    if not ids:
        return None
    row = for_update(
        cur,
        f"""
        SELECT {_COLUMNS}
        FROM payment_transactions
        WHERE payment_intent_id = ANY(%s) OR source_id = ANY(%s)
        ORDER BY id
        LIMIT 1
        """,
        (ids, ids),
    )
    return row_to_dict(cur, row)


def lock_transaction(cur: PgCursor, transaction_id: int) -> dict[str, Any] | None:
    row = for_update(
        cur,
        f"SELECT {_COLUMNS} FROM payment_transactions WHERE id = %s",
        (transaction_id,),
    )
    return row_to_dict(cur, row)


def transition_transaction(
    cur: PgCursor,
    *,
    transaction_id: int,
    expected_statuses: Iterable[str],
    new_status: str,
    provider_transaction_id: str | None = None,
    failure_reason: str | None = None,
) -> dict[str, Any] | None:
    """Move a transaction to new_status if it is still in expected_statuses.

    Returns:
        The updated row, or None when the status had already moved on.
    """
    cur.execute(
        f"""
        UPDATE payment_transactions
        SET status = %s,
            provider_transaction_id = COALESCE(%s, provider_transaction_id),
            failure_reason = COALESCE(%s, failure_reason),
            updated_at = now()
        WHERE id = %s AND status = ANY(%s)
        RETURNING {_COLUMNS}
        """,
        (
            new_status,
            provider_transaction_id,
            failure_reason,
            transaction_id,
            list(expected_statuses),
        ),
    )
    return row_to_dict(cur, cur.fetchone())


def attach_provider_transaction_id(
    cur: PgCursor,
    *,
    transaction_id: int,
    provider_transaction_id: str,
) -> bool:
    """Record the settled payment id on a row that lacks one. No status change."""
    cur.execute(
        """
        UPDATE payment_transactions
        SET provider_transaction_id = %s, updated_at = now()
        WHERE id = %s AND provider_transaction_id IS NULL
        """,
        (provider_transaction_id, transaction_id),
    )
    return cur.rowcount == 1


def list_transactions_for_booking(cur: PgCursor, booking_id: int) -> list[dict[str, Any]]:
    cur.execute(
        f"""
        SELECT {_COLUMNS}
        FROM payment_transactions
        WHERE booking_id = %s
        ORDER BY created_at DESC, id DESC
        """,
        (booking_id,),
    )
    return rows_to_dicts(cur, cur.fetchall())


def get_succeeded_transaction(cur: PgCursor, booking_id: int) -> dict[str, Any] | None:
    cur.execute(
        f"""
        SELECT {_COLUMNS}
        FROM payment_transactions
        WHERE booking_id = %s AND status = 'succeeded'
        ORDER BY id
        LIMIT 1
        """,
        (booking_id,),
    )
    return row_to_dict(cur, cur.fetchone())


def find_transaction_by_provider_id(
    cur: PgCursor,
    provider_transaction_id: str,
) -> dict[str, Any] | None:
    cur.execute(
        f"""
        SELECT {_COLUMNS}
        FROM payment_transactions
        WHERE provider_transaction_id = %s
        ORDER BY id
        LIMIT 1
        """,
        (provider_transaction_id,),
    )
    return row_to_dict(cur, cur.fetchone())


def count_attempts(cur: PgCursor, booking_id: int, payment_method: str) -> int:
    """Number of attempts so far for a booking/method (idempotency key suffix)."""
    cur.execute(
        """
        SELECT COUNT(*) FROM payment_transactions
        WHERE booking_id = %s AND payment_method = %s
        """,
        (booking_id, payment_method),
    )
    return int(cur.fetchone()[0])
