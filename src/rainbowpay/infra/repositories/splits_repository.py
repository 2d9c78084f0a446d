"""split_payment_transactions persistence."""

from __future__ import annotations

from decimal import Decimal
from typing import Any

from psycopg2.extensions import cursor as PgCursor

from rainbowpay.infra.db import row_to_dict

_COLUMNS = """
    id, booking_id, transaction_id, main_payment_id, platform_fee_amount,
    provider_amount, total_amount, commission_rate, split_status, created_at,
    updated_at
"""


def upsert_split(
    cur: PgCursor,
    *,
    booking_id: int,
    transaction_id: int | None,
    main_payment_id: str | None,
    platform_fee_amount: Decimal,
    provider_amount: Decimal,
    total_amount: Decimal,
    commission_rate: Decimal,
    split_status: str,
) -> dict[str, Any]:
    """Insert the split for a booking, or replace it for a new payment attempt.

    A settled split is never overwritten.
    """
    cur.execute(
        f"""
        INSERT INTO split_payment_transactions (
            booking_id, transaction_id, main_payment_id, platform_fee_amount,
            provider_amount, total_amount, commission_rate, split_status
        )
        VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
        ON CONFLICT (booking_id) DO UPDATE
        SET transaction_id = EXCLUDED.transaction_id,
            main_payment_id = EXCLUDED.main_payment_id,
            platform_fee_amount = EXCLUDED.platform_fee_amount,
            provider_amount = EXCLUDED.provider_amount,
            total_amount = EXCLUDED.total_amount,
            commission_rate = EXCLUDED.commission_rate,
            split_status = EXCLUDED.split_status,
            updated_at = now()
        WHERE split_payment_transactions.split_status <> 'settled'
        RETURNING {_COLUMNS}
        """,
        (
            booking_id,
            transaction_id,
            main_payment_id,
            platform_fee_amount,
            provider_amount,
            total_amount,
            commission_rate,
            split_status,
        ),
    )
    row = cur.fetchone()
    if row is None:
        return get_split_for_booking(cur, booking_id)
    return row_to_dict(cur, row)


def bind_split_to_transaction(
    cur: PgCursor,
    *,
    booking_id: int,
    transaction_id: int,
    main_payment_id: str | None,
) -> bool:
    """Point the booking's split at the transaction that actually settled.

    Returns:
        True if a split row was updated (settled splits are left alone).
    """
    cur.execute(
        """
        UPDATE split_payment_transactions
        SET transaction_id = %s, main_payment_id = %s, updated_at = now()
        WHERE booking_id = %s AND split_status <> 'settled'
        """,
        (transaction_id, main_payment_id, booking_id),
    )
    return cur.rowcount == 1


def get_split_for_booking(cur: PgCursor, booking_id: int) -> dict[str, Any] | None:
    cur.execute(
        f"SELECT {_COLUMNS} FROM split_payment_transactions WHERE booking_id = %s",
        (booking_id,),
    )
    return row_to_dict(cur, cur.fetchone())
