"""Repair drift between bookings.payment_status and the transaction ledger.

Two kinds of drift are detected:

- orphaned paid: booking says 'paid' but has no succeeded transaction
  (repaired to 'not_paid')
- orphaned unpaid: booking says 'not_paid' but a succeeded transaction
  exists (repaired to 'paid')

Detection is a single read transaction, paged by booking id so no drift is
left out of a large sweep. Repairs run one booking per transaction with a
row lock and a re-check, so a sweep that dies halfway keeps what it already
fixed and running it again converges to an empty diff.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Callable

from psycopg2.extensions import cursor as PgCursor

from rainbowpay.domain.errors import BookingNotFoundError, ReconciliationConflictError
from rainbowpay.infra.db import txn
from rainbowpay.infra.repositories.bookings_repository import (
    find_orphaned_paid,
    find_orphaned_unpaid,
    get_booking,
    lock_booking,
    set_payment_status,
)
from rainbowpay.infra.repositories.transactions_repository import get_succeeded_transaction
from rainbowpay.observability.correlation import get_correlation_id
from rainbowpay.observability.logging import get_logger, log_alert
from rainbowpay.observability.redaction import safe_log_context

logger = get_logger(__name__)

SWEEP_PAGE_SIZE = 500


def _scan(cur: PgCursor, finder: Callable[..., list[dict[str, Any]]], booking_id: int | None) -> list[int]:
    """Every booking id the finder reports, read page by page in id order."""
    found: list[int] = []
    after_id = None
    while True:
        rows = finder(cur, booking_id=booking_id, after_id=after_id, limit=SWEEP_PAGE_SIZE)
        found.extend(row["booking_id"] for row in rows)
        if len(rows) < SWEEP_PAGE_SIZE:
            return found
        after_id = rows[-1]["booking_id"]


@dataclass
class ReconciliationReport:
    dry_run: bool
    orphaned_paid: list[int] = field(default_factory=list)
    orphaned_unpaid: list[int] = field(default_factory=list)
    actions_taken: list[dict[str, Any]] = field(default_factory=list)
    mutated_booking_ids: list[int] = field(default_factory=list)
    conflicts: list[dict[str, Any]] = field(default_factory=list)
    failed_booking_ids: list[int] = field(default_factory=list)

    @property
    def drift_count(self) -> int:
        return len(self.orphaned_paid) + len(self.orphaned_unpaid)

    def as_dict(self) -> dict[str, Any]:
        return {
            "dry_run": self.dry_run,
            "orphaned_paid": self.orphaned_paid,
            "orphaned_unpaid": self.orphaned_unpaid,
            "actions_taken": self.actions_taken,
            "mutated_booking_ids": self.mutated_booking_ids,
            "conflicts": self.conflicts,
            "failed_booking_ids": self.failed_booking_ids,
        }


def _repair(booking_id: int, *, expected_status: str, target_status: str) -> None:
    """Move one booking from expected_status to target_status.

    Raises:
        ReconciliationConflictError: The booking no longer shows the drift.
    """
    with txn() as cur:
        booking = lock_booking(cur, booking_id)
        if booking is None:
            raise ReconciliationConflictError(
                "Booking disappeared before repair",
                booking_id=booking_id,
                observed_status=None,
            )

        observed = booking["payment_status"]
        has_succeeded = get_succeeded_transaction(cur, booking_id) is not None
        still_drifted = observed == expected_status and (
            has_succeeded if target_status == "paid" else not has_succeeded
        )
        if not still_drifted:
            raise ReconciliationConflictError(
                "Booking changed between detection and repair",
                booking_id=booking_id,
                observed_status=observed,
            )

        if not set_payment_status(cur, booking_id, target_status, expected_status=expected_status):
            raise ReconciliationConflictError(
                "Compare-and-set on payment_status lost",
                booking_id=booking_id,
                observed_status=observed,
            )


def reconcile(booking_id: int | None = None, *, dry_run: bool = True) -> ReconciliationReport:
    """Detect (and optionally repair) payment status drift.

    Args:
        booking_id: Restrict to one booking. None sweeps all bookings.
        dry_run: Report only; nothing is written.

    Returns:
        ReconciliationReport. Conflicts and per-booking failures are recorded
        in the report, never raised.

    Raises:
        BookingNotFoundError: booking_id given and unknown.
    """
    correlation_id = get_correlation_id()

    with txn() as cur:
        if booking_id is not None and get_booking(cur, booking_id) is None:
            raise BookingNotFoundError(f"Booking {booking_id} not found")
        orphaned_paid = _scan(cur, find_orphaned_paid, booking_id)
        orphaned_unpaid = _scan(cur, find_orphaned_unpaid, booking_id)

    report = ReconciliationReport(
        dry_run=dry_run,
        orphaned_paid=orphaned_paid,
        orphaned_unpaid=orphaned_unpaid,
    )

    logger.info(
        "reconciliation diff computed",
        extra={
            "extra_fields": safe_log_context(
                correlationId=correlation_id,
                booking_id=booking_id,
                dry_run=dry_run,
                orphaned_paid=len(report.orphaned_paid),
                orphaned_unpaid=len(report.orphaned_unpaid),
            )
        },
    )

    if dry_run:
        return report

    plan = [(bid, "paid", "not_paid") for bid in report.orphaned_paid] + [
        (bid, "not_paid", "paid") for bid in report.orphaned_unpaid
    ]

    for target_id, expected, target in plan:
        fields = safe_log_context(
            correlationId=correlation_id,
            booking_id=target_id,
            from_status=expected,
            to_status=target,
        )
        try:
            _repair(target_id, expected_status=expected, target_status=target)
        except ReconciliationConflictError as e:
            logger.warning(
                "reconciliation conflict",
                extra={"extra_fields": {**fields, "observed_status": str(e.observed_status)}},
            )
            report.conflicts.append({
                "booking_id": target_id,
                "observed_status": e.observed_status,
                "message": e.message,
            })
            continue
        except Exception:
            log_alert(logger, "reconciliation repair failed", fields)
            report.failed_booking_ids.append(target_id)
            continue

        report.actions_taken.append({
            "booking_id": target_id,
            "from": expected,
            "to": target,
        })
        report.mutated_booking_ids.append(target_id)
        logger.info("booking payment status repaired", extra={"extra_fields": fields})

    return report
