"""Refund records and their audit trail (raw SQL, psycopg2).

Status changes use update_refund_status(), a compare-and-set on the previous
status. Callers write the matching audit row with insert_audit_log() on the
same cursor so both land in one transaction.
"""

from __future__ import annotations

import json
from decimal import Decimal
from typing import Any

from psycopg2.extensions import cursor as PgCursor

from rainbowpay.infra.db import for_update, row_to_dict, rows_to_dicts

_COLUMNS = """
    id, booking_id, user_id, amount, reason, status, refund_type,
    payment_method, transaction_id, gateway_refund_id, processed_by,
    receipt_path, receipt_verified, receipt_verified_by, notes, metadata,
    initiated_at, processed_at, completed_at, created_at, updated_at
"""

# Columns a status transition may set alongside the status itself.
_UPDATABLE = frozenset({
    "gateway_refund_id",
    "processed_by",
    "receipt_path",
    "receipt_verified",
    "receipt_verified_by",
    "notes",
    "metadata",
    "processed_at",
    "completed_at",
})


def _assignments(fields: dict[str, Any]) -> tuple[list[str], list[Any]]:
    unknown = set(fields) - _UPDATABLE
    if unknown:
        raise ValueError(f"Cannot update refund columns: {sorted(unknown)}")
    clauses: list[str] = []
    values: list[Any] = []
    for column in sorted(fields):
        value = fields[column]
        if column == "metadata":
            clauses.append("metadata = %s::jsonb")
            values.append(json.dumps(value))
        else:
            clauses.append(f"{column} = %s")
            values.append(value)
    return clauses, values


def insert_refund(
    cur: PgCursor,
    *,
    booking_id: int,
    user_id: int,
    amount: Decimal,
    reason: str,
    refund_type: str,
    payment_method: str | None,
    transaction_id: int | None,
    notes: str | None = None,
    metadata: dict[str, Any] | None = None,
) -> dict[str, Any]:
    """Insert a refund in status 'pending' with initiated_at = now()."""
    cur.execute(
        f"""
        INSERT INTO refunds (
            booking_id, user_id, amount, reason, refund_type,
            payment_method, transaction_id, notes, metadata, status, initiated_at
        )
        VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s::jsonb, 'pending', now())
        RETURNING {_COLUMNS}
        """,
        (
            booking_id,
            user_id,
            amount,
            reason,
            refund_type,
            payment_method,
            transaction_id,
            notes,
            json.dumps(metadata or {}),
        ),
    )
    return row_to_dict(cur, cur.fetchone())


def get_refund(cur: PgCursor, refund_id: int) -> dict[str, Any] | None:
    cur.execute(f"SELECT {_COLUMNS} FROM refunds WHERE id = %s", (refund_id,))
    return row_to_dict(cur, cur.fetchone())


def lock_refund(cur: PgCursor, refund_id: int) -> dict[str, Any] | None:
    row = for_update(cur, f"SELECT {_COLUMNS} FROM refunds WHERE id = %s", (refund_id,))
    return row_to_dict(cur, row)


def list_refunds_for_booking(cur: PgCursor, booking_id: int) -> list[dict[str, Any]]:
    cur.execute(
        f"""
        SELECT {_COLUMNS} FROM refunds
        WHERE booking_id = %s
        ORDER BY created_at DESC, id DESC
        """,
        (booking_id,),
    )
    return rows_to_dicts(cur, cur.fetchall())


def sum_refunds(
    cur: PgCursor,
    booking_id: int,
    *,
    statuses: tuple[str, ...],
) -> Decimal:
    """Total refund amount for a booking over the given statuses."""
    cur.execute(
        """
        SELECT COALESCE(SUM(amount), 0) FROM refunds
        WHERE booking_id = %s AND status = ANY(%s)
        """,
        (booking_id, list(statuses)),
    )
    return Decimal(cur.fetchone()[0])


def update_refund_status(
    cur: PgCursor,
    *,
    refund_id: int,
    expected_status: str,
    new_status: str,
    fields: dict[str, Any] | None = None,
) -> dict[str, Any] | None:
    """Compare-and-set the refund status, applying extra column values.

    Returns:
        Updated row, or None if the refund was no longer in expected_status.
    """
    clauses, values = _assignments(fields or {})
    clauses = ["status = %s", *clauses, "updated_at = now()"]
    cur.execute(
        f"""
        UPDATE refunds SET {", ".join(clauses)}
        WHERE id = %s AND status = %s
        RETURNING {_COLUMNS}
        """,
        (new_status, *values, refund_id, expected_status),
    )
    return row_to_dict(cur, cur.fetchone())


def update_refund_fields(
    cur: PgCursor,
    *,
    refund_id: int,
    fields: dict[str, Any],
) -> dict[str, Any] | None:
    """Update non-status columns (receipt, metadata, verification flags)."""
    clauses, values = _assignments(fields)
    clauses.append("updated_at = now()")
    cur.execute(
        f"""
        UPDATE refunds SET {", ".join(clauses)}
        WHERE id = %s
        RETURNING {_COLUMNS}
        """,
        (*values, refund_id),
    )
    return row_to_dict(cur, cur.fetchone())


def find_refunds_by_gateway_id(cur: PgCursor, gateway_refund_id: str) -> list[dict[str, Any]]:
    cur.execute(
        f"SELECT {_COLUMNS} FROM refunds WHERE gateway_refund_id = %s ORDER BY id",
        (gateway_refund_id,),
    )
    return rows_to_dicts(cur, cur.fetchall())


def list_open_automatic_refunds(cur: PgCursor, booking_id: int) -> list[dict[str, Any]]:
    """Automatic refunds for a booking still waiting on the gateway."""
    cur.execute(
        f"""
        SELECT {_COLUMNS} FROM refunds
        WHERE booking_id = %s AND refund_type = 'automatic' AND status = 'processing'
        ORDER BY id
        """,
        (booking_id,),
    )
    return rows_to_dicts(cur, cur.fetchall())


def list_queued_automatic_refunds(
    cur: PgCursor,
    *,
    booking_id: int | None = None,
    limit: int = 100,
) -> list[dict[str, Any]]:
    """Pending automatic refunds parked because the gateway payment id was unknown."""
    cur.execute(
        f"""
        SELECT {_COLUMNS} FROM refunds
        WHERE status = 'pending'
          AND refund_type = 'automatic'
          AND (metadata ->> 'missing_payment_id') = 'true'
          AND (%s::bigint IS NULL OR booking_id = %s)
        ORDER BY id
        LIMIT %s
        """,
        (booking_id, booking_id, limit),
    )
    return rows_to_dicts(cur, cur.fetchall())


def list_unconfirmed_gateway_refunds(cur: PgCursor, *, limit: int = 100) -> list[dict[str, Any]]:
    """Processing automatic refunds whose gateway call ended without an answer."""
    cur.execute(
        f"""
        SELECT {_COLUMNS} FROM refunds
        WHERE status = 'processing'
          AND refund_type = 'automatic'
          AND (metadata ->> 'gateway_outcome_unknown') = 'true'
        ORDER BY id
        LIMIT %s
        """,
        (limit,),
    )
    return rows_to_dicts(cur, cur.fetchall())


def insert_audit_log(
    cur: PgCursor,
    *,
    refund_id: int,
    action: str,
    previous_status: str | None,
    new_status: str | None,
    performed_by: int | None,
    performed_by_type: str,
    details: str | None = None,
    ip_address: str | None = None,
) -> None:
    """Append one row to refund_audit_logs."""
    cur.execute(
        """
        INSERT INTO refund_audit_logs (
            refund_id, action, previous_status, new_status,
            performed_by, performed_by_type, details, ip_address
        )
        VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
        """,
        (
            refund_id,
            action,
            previous_status,
            new_status,
            performed_by,
            performed_by_type,
            details,
            ip_address,
        ),
    )


def list_audit_logs(cur: PgCursor, refund_id: int) -> list[dict[str, Any]]:
    cur.execute(
        """
        SELECT id, refund_id, action, previous_status, new_status,
               performed_by, performed_by_type, details, ip_address, created_at
        FROM refund_audit_logs
        WHERE refund_id = %s
        ORDER BY created_at, id
        """,
        (refund_id,),
    )
    return rows_to_dicts(cur, cur.fetchall())
