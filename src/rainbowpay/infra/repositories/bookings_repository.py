"""Booking store access.

Bookings belong to the booking service. The engine reads identity, owner,
provider and amount, and writes a single column: payment_status.
"""

from __future__ import annotations

from typing import Any

from psycopg2.extensions import cursor as PgCursor

from rainbowpay.infra.db import row_to_dict, rows_to_dicts

_BOOKING_SELECT = """
    SELECT b.id, b.user_id, b.provider_id, b.status, b.payment_status,
           b.payment_method, b.total_price, sp.commission_rate,
           sp.paymongo_merchant_id AS provider_merchant_id
    FROM bookings b
    LEFT JOIN service_providers sp ON sp.id = b.provider_id
    WHERE b.id = %s
"""


def get_booking(cur: PgCursor, booking_id: int) -> dict[str, Any] | None:
    cur.execute(_BOOKING_SELECT, (booking_id,))
    return row_to_dict(cur, cur.fetchone())


def lock_booking(cur: PgCursor, booking_id: int) -> dict[str, Any] | None:
    """Fetch and row-lock a booking for the rest of the transaction."""
    # OF b: the outer-joined provider row cannot be locked
    cur.execute(_BOOKING_SELECT + " FOR UPDATE OF b", (booking_id,))
    return row_to_dict(cur, cur.fetchone())


def set_payment_status(
    cur: PgCursor,
    booking_id: int,
    payment_status: str,
    *,
    expected_status: str | None = None,
) -> bool:
    """Write bookings.payment_status.

    Args:
        cur: Database cursor (within transaction).
        booking_id: Booking id.
        payment_status: New value.
        expected_status: When set, only update if the current value matches.

    Returns:
        True if a row was updated.
    """
    if expected_status is None:
        cur.execute(
            """
            UPDATE bookings SET payment_status = %s, updated_at = now()
            WHERE id = %s
            """,
            (payment_status, booking_id),
        )
    else:
        cur.execute(
            """
            UPDATE bookings SET payment_status = %s, updated_at = now()
            WHERE id = %s AND payment_status = %s
            """,
            (payment_status, booking_id, expected_status),
        )
    return cur.rowcount == 1


def find_orphaned_paid(
    cur: PgCursor,
    *,
    booking_id: int | None = None,
    after_id: int | None = None,
    limit: int = 500,
) -> list[dict[str, Any]]:
    """Bookings marked paid with no succeeded transaction, in id order after after_id."""
    cur.execute(
        """
        SELECT b.id AS booking_id, b.payment_status
        FROM bookings b
        WHERE b.payment_status = 'paid'
          AND (%s::bigint IS NULL OR b.id = %s)
          AND (%s::bigint IS NULL OR b.id > %s)
          AND NOT EXISTS (
              SELECT 1 FROM payment_transactions pt
              WHERE pt.booking_id = b.id AND pt.status = 'succeeded'
          )
        ORDER BY b.id
        LIMIT %s
        """,
        (booking_id, booking_id, after_id, after_id, limit),
    )
    return rows_to_dicts(cur, cur.fetchall())


def find_orphaned_unpaid(
    cur: PgCursor,
    *,
    booking_id: int | None = None,
    after_id: int | None = None,
    limit: int = 500,
) -> list[dict[str, Any]]:
    """Bookings marked not_paid although a succeeded transaction exists, in id order."""
    cur.execute(
        """
        SELECT b.id AS booking_id, b.payment_status
        FROM bookings b
        WHERE b.payment_status = 'not_paid'
          AND (%s::bigint IS NULL OR b.id = %s)
          AND (%s::bigint IS NULL OR b.id > %s)
          AND EXISTS (
              SELECT 1 FROM payment_transactions pt
              WHERE pt.booking_id = b.id AND pt.status = 'succeeded'
          )
        ORDER BY b.id
        LIMIT %s
        """,
        (booking_id, booking_id, after_id, after_id, limit),
    )
    return rows_to_dicts(cur, cur.fetchall())
