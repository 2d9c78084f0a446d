"""Refund lifecycle: eligibility, creation, automatic and manual flows.

States: pending -> processing -> {completed, failed, cancelled}
(pending may also go straight to cancelled or failed).

Rules enforced here:
- Every status change is a compare-and-set on the previous status and writes
  exactly one refund_audit_logs row on the same cursor (one transaction).
- Refund creation locks the booking row, so concurrent requests cannot
  push active refunds past the paid amount.
- A manual refund reaches 'completed' only with a receipt on file AND
  receipt_verified set by a privileged user, whoever calls completion.
- The gateway is called outside any transaction; its outcome is recorded
  in a new one. Once an automatic refund has been handed to the gateway
  only gateway outcomes settle it: staff cannot cancel or fail it, and a
  timeout leaves it processing (gateway_outcome_unknown) instead of opening
  a manual fallback.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import ROUND_HALF_UP, Decimal
from enum import Enum
from typing import Any, Callable

from psycopg2.extensions import cursor as PgCursor

from rainbowpay.domain.errors import (
    BookingNotFoundError,
    GatewayError,
    IneligibleRefundError,
    InvalidRefundTransitionError,
    ManualRefundGateError,
    NotBookingOwnerError,
    ReceiptNotAllowedError,
    ReceiptValidationError,
    RefundNotFoundError,
)
from rainbowpay.domain.ledger import PaymentMethod, normalize_payment_method
from rainbowpay.infra.db import txn
from rainbowpay.infra.notifications import NotificationKind, notify
from rainbowpay.infra.repositories.bookings_repository import (
    get_booking,
    lock_booking,
    set_payment_status,
)
from rainbowpay.infra.repositories.refunds_repository import (
    find_refunds_by_gateway_id,
    get_refund as fetch_refund,
    insert_audit_log,
    insert_refund,
    list_audit_logs,
    list_open_automatic_refunds,
    list_queued_automatic_refunds,
    list_unconfirmed_gateway_refunds,
    list_refunds_for_booking as fetch_refunds_for_booking,
    lock_refund,
    sum_refunds,
    update_refund_fields,
    update_refund_status,
)
from rainbowpay.infra.repositories.transactions_repository import (
    find_transaction_by_provider_id,
    get_succeeded_transaction,
)
from rainbowpay.infra.storage import ReceiptStorage, get_receipt_storage
from rainbowpay.infra.time import compact_timestamp, utc_now
from rainbowpay.observability.correlation import get_correlation_id
from rainbowpay.observability.logging import get_logger
from rainbowpay.observability.redaction import id_prefix, safe_log_context
from rainbowpay.paymongo.client import GATEWAY_REFUND_REASON, PaymongoClient

logger = get_logger(__name__)

CENT = Decimal("0.01")


# ── Enums & constants ────────────────────────────────────


class RefundStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class RefundType(str, Enum):
    AUTOMATIC = "automatic"
    MANUAL = "manual"


class RefundReason(str, Enum):
    USER_REQUESTED = "user_requested"
    PROVIDER_CANCELLED = "provider_cancelled"
    ADMIN_INITIATED = "admin_initiated"
    SERVICE_UNAVAILABLE = "service_unavailable"
    TECHNICAL_ISSUE = "technical_issue"
    DUPLICATE_BOOKING = "duplicate_booking"
    OTHER = "other"


class ActorType(str, Enum):
    SYSTEM = "system"
    ADMIN = "admin"
    STAFF = "staff"


@dataclass(frozen=True)
class Actor:
    """Who performed an action, as recorded in the audit trail."""

    id: int | None
    type: ActorType
    ip_address: str | None = None


SYSTEM_ACTOR = Actor(id=None, type=ActorType.SYSTEM)

REFUND_TRANSITIONS: dict[RefundStatus, frozenset[RefundStatus]] = {
    RefundStatus.PENDING: frozenset({
        RefundStatus.PROCESSING,
        RefundStatus.CANCELLED,
        RefundStatus.FAILED,
    }),
    RefundStatus.PROCESSING: frozenset({
        RefundStatus.COMPLETED,
        RefundStatus.FAILED,
        RefundStatus.CANCELLED,
    }),
}

TERMINAL_REFUND_STATUSES = frozenset({
    RefundStatus.COMPLETED,
    RefundStatus.FAILED,
    RefundStatus.CANCELLED,
})

# Refunds that count against the paid amount.
ACTIVE_REFUND_STATUSES = ("pending", "processing", "completed")

# Booking statuses the booking service allows refunds from.
REFUNDABLE_BOOKING_STATUSES = frozenset({"pending", "confirmed", "in_progress"})

AUTOMATIC_METHODS = frozenset({PaymentMethod.GCASH, PaymentMethod.CARD, PaymentMethod.PAYMAYA})

ALLOWED_RECEIPT_TYPES = {
    "image/jpeg": ".jpg",
    "image/jpg": ".jpg",
    "image/png": ".png",
    "application/pdf": ".pdf",
}
MAX_RECEIPT_BYTES = 10 * 1024 * 1024


# ── Eligibility ──────────────────────────────────────────


@dataclass
class RefundEligibility:
    booking_id: int
    eligible: bool
    reason_code: str | None = None
    message: str | None = None
    booking_status: str | None = None
    payment_status: str | None = None
    paid_amount: Decimal = Decimal("0")
    refunded_amount: Decimal = Decimal("0")
    refundable_amount: Decimal = Decimal("0")
    refund_type: RefundType | None = None

    def as_dict(self) -> dict[str, Any]:
        return {
            "booking_id": self.booking_id,
            "eligible": self.eligible,
            "reason_code": self.reason_code,
            "message": self.message,
            "booking_status": self.booking_status,
            "payment_status": self.payment_status,
            "paid_amount": str(self.paid_amount),
            "refunded_amount": str(self.refunded_amount),
            "refundable_amount": str(self.refundable_amount),
            "refund_type": self.refund_type.value if self.refund_type else None,
        }


def determine_refund_type(method: PaymentMethod | str | None) -> RefundType:
    """Gateway-refundable methods are automatic; cash, QR and unknown are manual."""
    if not isinstance(method, PaymentMethod):
        method = normalize_payment_method(method)
    return RefundType.AUTOMATIC if method in AUTOMATIC_METHODS else RefundType.MANUAL


def _evaluate_eligibility(
    booking: dict[str, Any],
    succeeded_tx: dict[str, Any] | None,
    active_total: Decimal,
) -> RefundEligibility:
    result = RefundEligibility(
        booking_id=booking["id"],
        eligible=False,
        booking_status=booking.get("status"),
        payment_status=booking.get("payment_status"),
        refunded_amount=active_total,
    )

    if succeeded_tx is None:
        result.reason_code = "BOOKING_NOT_PAID"
        result.message = "Booking has no settled payment"
        return result

    result.paid_amount = Decimal(succeeded_tx["amount"])
    result.refundable_amount = max(result.paid_amount - active_total, Decimal("0"))
    result.refund_type = determine_refund_type(
        succeeded_tx.get("payment_method") or booking.get("payment_method")
    )

    if booking.get("payment_status") == "refunded" or result.refundable_amount <= 0:
        result.reason_code = "ALREADY_REFUNDED"
        result.message = "Booking is already fully refunded"
        return result

    if booking.get("status") not in REFUNDABLE_BOOKING_STATUSES:
        result.reason_code = "BOOKING_STATUS_NOT_REFUNDABLE"
        result.message = f"Booking status '{booking.get('status')}' does not allow refunds"
        return result

    result.eligible = True
    return result


def check_refund_eligibility(booking_id: int, *, owner_id: int | None = None) -> RefundEligibility:
    """Whether a booking can be refunded right now, and for how much.

    Raises:
        BookingNotFoundError: If the booking does not exist.
        NotBookingOwnerError: owner_id given and not the booking's owner.
    """
    with txn() as cur:
        booking = get_booking(cur, booking_id)
        if booking is None:
            raise BookingNotFoundError(f"Booking {booking_id} not found")
        if owner_id is not None and booking["user_id"] != owner_id:
            raise NotBookingOwnerError("Booking does not belong to the current user")
        succeeded_tx = get_succeeded_transaction(cur, booking_id)
        active_total = sum_refunds(cur, booking_id, statuses=ACTIVE_REFUND_STATUSES)
    return _evaluate_eligibility(booking, succeeded_tx, active_total)


def manual_refund_instructions(method: PaymentMethod | str | None, amount: Decimal) -> list[str]:
    """Step-by-step operator instructions for a manual refund."""
    if not isinstance(method, PaymentMethod):
        method = normalize_payment_method(method)
    amount_text = f"PHP {Decimal(amount).quantize(CENT):,}"

    if method is PaymentMethod.QR_CODE:
        return [
            "Process the refund from the provider's PayMongo dashboard:",
            "1. Open Payments and find the original QR payment",
            f"2. Refund {amount_text}",
            "3. Download the official refund receipt",
            "4. Upload the receipt to this refund",
            "5. Wait for an administrator to verify the receipt",
        ]
    if method is PaymentMethod.CASH:
        return [
            f"1. Prepare {amount_text} in cash",
            "2. Arrange collection with the customer",
            "3. Have the customer sign a refund receipt",
            "4. Upload a photo or scan of the signed receipt",
            "5. Wait for an administrator to verify the receipt",
        ]
    return [
        f"1. Refund {amount_text} through the original payment channel",
        "2. Obtain the official confirmation or receipt",
        "3. Upload the confirmation to this refund",
        "4. Wait for an administrator to verify the receipt",
    ]


# ── Internal helpers ─────────────────────────────────────


_gateway_client: PaymongoClient | None = None


def _get_gateway_client() -> PaymongoClient:
    """Gateway client instance (allows test injection)."""
    global _gateway_client
    if _gateway_client is None:
        _gateway_client = PaymongoClient()
    return _gateway_client


def _log_fields(refund: dict[str, Any], **kwargs: Any) -> dict[str, str]:
    return safe_log_context(
        correlationId=get_correlation_id(),
        refund_id=refund["id"],
        booking_id=refund["booking_id"],
        **kwargs,
    )


def _audit(
    cur: PgCursor,
    refund_id: int,
    *,
    action: str,
    previous_status: str | None,
    new_status: str | None,
    actor: Actor,
    details: str | None = None,
) -> None:
    insert_audit_log(
        cur,
        refund_id=refund_id,
        action=action,
        previous_status=previous_status,
        new_status=new_status,
        performed_by=actor.id,
        performed_by_type=actor.type.value,
        details=details,
        ip_address=actor.ip_address,
    )


def _transition_locked(
    cur: PgCursor,
    refund: dict[str, Any],
    new_status: RefundStatus,
    *,
    actor: Actor,
    action: str,
    details: str | None = None,
    fields: dict[str, Any] | None = None,
) -> dict[str, Any]:
    """CAS the (already locked) refund into new_status and write its audit row."""
    current = RefundStatus(refund["status"])
    if new_status not in REFUND_TRANSITIONS.get(current, frozenset()):
        raise InvalidRefundTransitionError(
            f"Refund {refund['id']} cannot move from {current.value} to {new_status.value}"
        )

    updated = update_refund_status(
        cur,
        refund_id=refund["id"],
        expected_status=current.value,
        new_status=new_status.value,
        fields=fields,
    )
    if updated is None:
        raise InvalidRefundTransitionError(
            f"Refund {refund['id']} changed concurrently; expected {current.value}"
        )

    _audit(
        cur,
        refund["id"],
        action=action,
        previous_status=current.value,
        new_status=new_status.value,
        actor=actor,
        details=details,
    )
    return updated


def _lock_or_404(cur: PgCursor, refund_id: int) -> dict[str, Any]:
    refund = lock_refund(cur, refund_id)
    if refund is None:
        raise RefundNotFoundError(f"Refund {refund_id} not found")
    return refund


def _transition(
    refund_id: int,
    new_status: RefundStatus,
    *,
    actor: Actor,
    action: str,
    details: str | None = None,
    fields: dict[str, Any] | None = None,
    guard: Callable[[dict[str, Any]], None] | None = None,
) -> dict[str, Any]:
    """Lock, optionally check, transition and audit a refund in one transaction."""
    with txn() as cur:
        refund = _lock_or_404(cur, refund_id)
        if guard is not None:
            guard(refund)
        updated = _transition_locked(
            cur,
            refund,
            new_status,
            actor=actor,
            action=action,
            details=details,
            fields=fields,
        )
        if new_status is RefundStatus.COMPLETED:
            _mark_booking_refunded_if_covered(cur, updated["booking_id"])

    logger.info(
        "refund status changed",
        extra={
            "extra_fields": _log_fields(
                updated,
                previous_status=refund["status"],
                new_status=new_status.value,
                action=action,
                actor_type=actor.type.value,
            )
        },
    )
    return updated


def _mark_booking_refunded_if_covered(cur: PgCursor, booking_id: int) -> bool:
    """Flip payment_status paid -> refunded once completed refunds cover the payment."""
    succeeded_tx = get_succeeded_transaction(cur, booking_id)
    if succeeded_tx is None:
        return False
    completed = sum_refunds(cur, booking_id, statuses=("completed",))
    if completed < Decimal(succeeded_tx["amount"]):
        return False
    return set_payment_status(cur, booking_id, "refunded", expected_status="paid")


def _notify_outcome(refund: dict[str, Any]) -> None:
    kind = {
        RefundStatus.PROCESSING.value: NotificationKind.REFUND_PROCESSING,
        RefundStatus.COMPLETED.value: NotificationKind.REFUND_COMPLETED,
        RefundStatus.FAILED.value: NotificationKind.REFUND_FAILED,
    }.get(refund["status"])
    if kind is not None:
        notify(refund["booking_id"], kind, dedupe_key=f"refund{refund['id']}")


def _quantize(amount: Decimal) -> Decimal:
    return Decimal(amount).quantize(CENT, rounding=ROUND_HALF_UP)


# ── Creation ─────────────────────────────────────────────


def create_refund_record(
    booking_id: int,
    *,
    reason: str,
    actor: Actor,
    amount: Decimal | None = None,
    notes: str | None = None,
    owner_id: int | None = None,
) -> dict[str, Any]:
    """Create a pending refund for a booking.

    The booking row is locked while the refundable amount is computed and
    the refund inserted.

    Args:
        booking_id: Booking to refund.
        reason: One of RefundReason.
        actor: Who initiated the refund (audit trail).
        amount: Amount to refund. Defaults to everything still refundable.
        notes: Optional free-text notes.
        owner_id: When set, the booking must belong to this user.

    Returns:
        The inserted refund row.

    Raises:
        IneligibleRefundError: Unknown reason, bad amount or ineligible booking
            (``code`` carries the machine-readable reason).
        BookingNotFoundError: Booking does not exist.
        NotBookingOwnerError: owner_id given and not the booking's owner.
    """
    try:
        reason_code = RefundReason(reason)
    except ValueError:
        raise IneligibleRefundError(
            f"Unknown refund reason '{reason}'", code="INVALID_REASON"
        ) from None

    if amount is not None:
        amount = _quantize(amount)
        if amount <= 0:
            raise IneligibleRefundError("Refund amount must be positive", code="INVALID_AMOUNT")

    with txn() as cur:
        booking = lock_booking(cur, booking_id)
        if booking is None:
            raise BookingNotFoundError(f"Booking {booking_id} not found")
        if owner_id is not None and booking["user_id"] != owner_id:
            raise NotBookingOwnerError("Booking does not belong to the current user")

        succeeded_tx = get_succeeded_transaction(cur, booking_id)
        active_total = sum_refunds(cur, booking_id, statuses=ACTIVE_REFUND_STATUSES)
        eligibility = _evaluate_eligibility(booking, succeeded_tx, active_total)
        if not eligibility.eligible:
            raise IneligibleRefundError(eligibility.message, code=eligibility.reason_code)

        if amount is None:
            amount = eligibility.refundable_amount
        if amount > eligibility.refundable_amount:
            raise IneligibleRefundError(
                f"Refund amount {amount} exceeds refundable amount "
                f"{eligibility.refundable_amount}",
                code="AMOUNT_EXCEEDS_PAID",
            )

        method = normalize_payment_method(
            succeeded_tx.get("payment_method") or booking.get("payment_method")
        )
        refund_type = determine_refund_type(method)

        refund = insert_refund(
            cur,
            booking_id=booking_id,
            user_id=booking["user_id"],
            amount=amount,
            reason=reason_code.value,
            refund_type=refund_type.value,
            payment_method=method.value,
            transaction_id=succeeded_tx["id"],
            notes=notes,
            metadata={
                "initiated_by_type": actor.type.value,
                "paid_amount": str(eligibility.paid_amount),
            },
        )
        _audit(
            cur,
            refund["id"],
            action=(
                "refund_initiated"
                if refund_type is RefundType.AUTOMATIC
                else "manual_refund_initiated"
            ),
            previous_status=None,
            new_status=RefundStatus.PENDING.value,
            actor=actor,
            details=f"{refund_type.value} refund of {amount} requested ({reason_code.value})",
        )

    logger.info(
        "refund created",
        extra={
            "extra_fields": _log_fields(
                refund,
                amount=amount,
                refund_type=refund_type.value,
                reason=reason_code.value,
            )
        },
    )
    return refund


@dataclass
class RefundRequestResult:
    refund: dict[str, Any]
    instructions: list[str] = field(default_factory=list)

    def as_dict(self) -> dict[str, Any]:
        body = {
            "refund_id": self.refund["id"],
            "status": self.refund["status"],
            "amount": str(self.refund["amount"]),
            "refund_type": self.refund["refund_type"],
        }
        if self.instructions:
            body["instructions"] = self.instructions
        return body


def request_refund(
    booking_id: int,
    *,
    user_id: int,
    reason: str,
    notes: str | None = None,
    ip_address: str | None = None,
) -> RefundRequestResult:
    """Customer-facing refund request for the full refundable amount.

    Customer requests are audited as 'system' with performed_by set to the
    customer's id; staff/admin act through the refund actions.
    """
    refund = create_refund_record(
        booking_id,
        reason=reason,
        actor=Actor(id=user_id, type=ActorType.SYSTEM, ip_address=ip_address),
        notes=notes,
        owner_id=user_id,
    )
    instructions: list[str] = []
    if refund["refund_type"] == RefundType.MANUAL.value:
        instructions = manual_refund_instructions(refund["payment_method"], refund["amount"])
    return RefundRequestResult(refund=refund, instructions=instructions)


# ── Automatic flow ───────────────────────────────────────


def _resolve_gateway_payment_id(
    succeeded_tx: dict[str, Any] | None,
    gateway: PaymongoClient,
) -> str | None:
    """Settled gateway payment id for a transaction, searching the gateway if needed."""
    if succeeded_tx is None:
        return None
    if succeeded_tx.get("provider_transaction_id"):
        return succeeded_tx["provider_transaction_id"]

    source_id = succeeded_tx.get("source_id")
    intent_id = succeeded_tx.get("payment_intent_id")
    if not source_id and not intent_id:
        return None

    try:
        payments = gateway.list_payments(limit=100)
    except GatewayError:
        logger.warning(
            "gateway payment lookup failed; refund stays queued",
            extra={
                "extra_fields": safe_log_context(
                    correlationId=get_correlation_id(),
                    booking_id=succeeded_tx["booking_id"],
                )
            },
        )
        return None

    for payment in payments:
        if payment.status != "paid":
            continue
        if (source_id and payment.source_id == source_id) or (
            intent_id and payment.payment_intent_id == intent_id
        ):
            return payment.id
    return None


def _queue_for_missing_payment_id(refund: dict[str, Any], actor: Actor) -> dict[str, Any]:
    with txn() as cur:
        locked = _lock_or_404(cur, refund["id"])
        metadata = dict(locked.get("metadata") or {})
        if metadata.get("missing_payment_id") is True:
            return locked
        metadata["missing_payment_id"] = True
        updated = update_refund_fields(cur, refund_id=refund["id"], fields={"metadata": metadata})
        _audit(
            cur,
            refund["id"],
            action="refund_queued",
            previous_status=locked["status"],
            new_status=locked["status"],
            actor=actor,
            details="Gateway payment id unknown; waiting for payment confirmation",
        )

    logger.warning(
        "automatic refund queued: gateway payment id unknown",
        extra={"extra_fields": _log_fields(refund)},
    )
    return updated


def _is_definite_rejection(error: GatewayError) -> bool:
    """A 4xx means the gateway refused the refund; anything else may have landed."""
    return error.status_code is not None and 400 <= error.status_code < 500


def _submit_automatic_refund(
    refund_id: int,
    payment_id: str,
    *,
    actor: Actor,
    gateway: PaymongoClient,
) -> dict[str, Any]:
    """pending -> processing, then hand the refund to the gateway."""
    with txn() as cur:
        refund = _lock_or_404(cur, refund_id)
        metadata = dict(refund.get("metadata") or {})
        metadata.pop("missing_payment_id", None)
        metadata["gateway_payment_id"] = payment_id
        refund = _transition_locked(
            cur,
            refund,
            RefundStatus.PROCESSING,
            actor=actor,
            action="status_change",
            details="Submitting refund to gateway",
            fields={
                "metadata": metadata,
                "processed_by": actor.id,
                "processed_at": utc_now(),
            },
        )
    return _send_to_gateway(refund, payment_id, gateway=gateway)


def _send_to_gateway(
    refund: dict[str, Any],
    payment_id: str,
    *,
    gateway: PaymongoClient,
) -> dict[str, Any]:
    """Call the gateway for a processing refund and record what it said.

    The idempotency key is derived from the refund id, so resubmitting after
    a timeout cannot refund twice. A definite rejection (4xx, or a refund the
    gateway reports failed) marks the refund failed and opens a manual refund
    for the same amount. A timeout, an unreachable gateway or a 5xx leaves
    the refund processing and flagged gateway_outcome_unknown for the retry
    sweep and the refund.* webhooks to settle.
    """
    refund_id = refund["id"]
    try:
        gateway_refund = gateway.create_refund(
            payment_id=payment_id,
            amount=Decimal(refund["amount"]),
            reason=GATEWAY_REFUND_REASON,
            notes=refund["reason"],
            idempotency_key=f"refund:{refund_id}",
            metadata={
                "booking_id": str(refund["booking_id"]),
                "refund_id": str(refund_id),
            },
            correlation_id=get_correlation_id(),
        )
    except GatewayError as e:
        if _is_definite_rejection(e):
            return _fail_with_manual_fallback(refund, str(e))
        return _mark_outcome_unknown(refund, str(e))

    if gateway_refund.status == "failed":
        return _fail_with_manual_fallback(refund, "Gateway reported refund failed")

    with txn() as cur:
        locked = _lock_or_404(cur, refund_id)
        metadata = dict(locked.get("metadata") or {})
        metadata.pop("gateway_outcome_unknown", None)
        if gateway_refund.status == "succeeded" and locked["status"] == RefundStatus.PROCESSING.value:
            updated = _transition_locked(
                cur,
                locked,
                RefundStatus.COMPLETED,
                actor=SYSTEM_ACTOR,
                action="refund_completed",
                details=f"Gateway refund {id_prefix(gateway_refund.id)} succeeded",
                fields={
                    "gateway_refund_id": gateway_refund.id,
                    "completed_at": utc_now(),
                    "metadata": metadata,
                },
            )
            _mark_booking_refunded_if_covered(cur, updated["booking_id"])
        else:
            # gateway accepted it; refund.succeeded / refund.failed finishes it
            updated = update_refund_fields(
                cur,
                refund_id=refund_id,
                fields={"gateway_refund_id": gateway_refund.id, "metadata": metadata},
            )
            _audit(
                cur,
                refund_id,
                action="gateway_refund_created",
                previous_status=locked["status"],
                new_status=locked["status"],
                actor=SYSTEM_ACTOR,
                details=f"Gateway refund {id_prefix(gateway_refund.id)} is {gateway_refund.status}",
            )

    logger.info(
        "automatic refund submitted",
        extra={
            "extra_fields": _log_fields(
                updated,
                gateway_refund_prefix=id_prefix(gateway_refund.id),
                gateway_status=gateway_refund.status,
            )
        },
    )
    _notify_outcome(updated)
    return updated


def _mark_outcome_unknown(refund: dict[str, Any], error_message: str) -> dict[str, Any]:
    with txn() as cur:
        locked = _lock_or_404(cur, refund["id"])
        if locked["status"] != RefundStatus.PROCESSING.value:
            return locked
        metadata = dict(locked.get("metadata") or {})
        metadata["gateway_outcome_unknown"] = True
        updated = update_refund_fields(cur, refund_id=locked["id"], fields={"metadata": metadata})
        _audit(
            cur,
            locked["id"],
            action="gateway_outcome_unknown",
            previous_status=locked["status"],
            new_status=locked["status"],
            actor=SYSTEM_ACTOR,
            details=f"Gateway outcome unknown: {error_message}",
        )

    logger.warning(
        "automatic refund outcome unknown; left processing for resubmission",
        extra={"extra_fields": _log_fields(updated)},
    )
    return updated


def _fail_with_manual_fallback(refund: dict[str, Any], error_message: str) -> dict[str, Any]:
    with txn() as cur:
        locked = _lock_or_404(cur, refund["id"])
        if locked["status"] != RefundStatus.PROCESSING.value:
            return locked

        fallback = insert_refund(
            cur,
            booking_id=locked["booking_id"],
            user_id=locked["user_id"],
            amount=Decimal(locked["amount"]),
            reason=locked["reason"],
            refund_type=RefundType.MANUAL.value,
            payment_method=locked["payment_method"],
            transaction_id=locked["transaction_id"],
            notes=f"Manual fallback for automatic refund #{locked['id']}",
            metadata={"fallback_for_refund_id": locked["id"]},
        )
        metadata = dict(locked.get("metadata") or {})
        metadata.pop("gateway_outcome_unknown", None)
        metadata["fallback_refund_id"] = fallback["id"]

        # the failed refund leaves the active set in the same transaction
        # the fallback enters it, so the paid-amount bound still holds
        failed = _transition_locked(
            cur,
            locked,
            RefundStatus.FAILED,
            actor=SYSTEM_ACTOR,
            action="refund_failed",
            details=f"Gateway error: {error_message}",
            fields={"notes": f"Gateway error: {error_message}", "metadata": metadata},
        )
        _audit(
            cur,
            fallback["id"],
            action="manual_refund_initiated",
            previous_status=None,
            new_status=RefundStatus.PENDING.value,
            actor=SYSTEM_ACTOR,
            details=f"Fallback after gateway failure of refund #{locked['id']}",
        )

    logger.warning(
        "automatic refund failed; manual fallback created",
        extra={"extra_fields": _log_fields(failed, fallback_refund_id=fallback["id"])},
    )
    return failed


def approve_refund(
    refund_id: int,
    *,
    actor: Actor,
    gateway: PaymongoClient | None = None,
) -> dict[str, Any]:
    """Start processing a pending refund.

    Manual refunds move to 'processing' and wait for a receipt. Automatic
    refunds are submitted to the gateway; if the settled payment id is not
    known yet the refund stays pending, flagged missing_payment_id, and is
    released by the next payment.paid event or the retry task.

    Raises:
        RefundNotFoundError: Unknown refund.
        InvalidRefundTransitionError: Refund is not pending.
    """
    with txn() as cur:
        refund = _lock_or_404(cur, refund_id)
        if refund["status"] != RefundStatus.PENDING.value:
            raise InvalidRefundTransitionError(
                f"Refund {refund_id} is {refund['status']}, expected pending"
            )

        if refund["refund_type"] == RefundType.MANUAL.value:
            updated = _transition_locked(
                cur,
                refund,
                RefundStatus.PROCESSING,
                actor=actor,
                action="refund_approved",
                details="Manual refund approved; awaiting receipt",
                fields={"processed_by": actor.id, "processed_at": utc_now()},
            )
        else:
            updated = None
            succeeded_tx = get_succeeded_transaction(cur, refund["booking_id"])

    if updated is not None:
        logger.info("manual refund approved", extra={"extra_fields": _log_fields(updated)})
        _notify_outcome(updated)
        return updated

    gateway = gateway or _get_gateway_client()
    payment_id = _resolve_gateway_payment_id(succeeded_tx, gateway)
    if payment_id is None:
        return _queue_for_missing_payment_id(refund, actor)
    return _submit_automatic_refund(refund_id, payment_id, actor=actor, gateway=gateway)


def reconcile_queued_automatic_refunds(
    booking_id: int,
    payment_id: str,
    *,
    gateway: PaymongoClient | None = None,
) -> list[dict[str, Any]]:
    """Submit automatic refunds that were parked waiting for this booking's payment id."""
    with txn() as cur:
        queued = list_queued_automatic_refunds(cur, booking_id=booking_id)

    if not queued:
        return []

    gateway = gateway or _get_gateway_client()
    results: list[dict[str, Any]] = []
    for refund in queued:
        try:
            results.append(
                _submit_automatic_refund(
                    refund["id"], payment_id, actor=SYSTEM_ACTOR, gateway=gateway
                )
            )
        except InvalidRefundTransitionError:
            logger.info(
                "queued refund already moved on; skipping",
                extra={"extra_fields": _log_fields(refund)},
            )
    return results


@dataclass
class QueuedRefundSweep:
    examined: int = 0
    submitted: list[int] = field(default_factory=list)
    still_queued: list[int] = field(default_factory=list)
    resubmitted: list[int] = field(default_factory=list)
    outcome_unknown: list[int] = field(default_factory=list)

    def as_dict(self) -> dict[str, Any]:
        return {
            "examined": self.examined,
            "submitted": self.submitted,
            "still_queued": self.still_queued,
            "resubmitted": self.resubmitted,
            "outcome_unknown": self.outcome_unknown,
        }


def retry_queued_automatic_refunds(
    *,
    limit: int = 100,
    gateway: PaymongoClient | None = None,
) -> QueuedRefundSweep:
    """Release parked automatic refunds and resubmit unconfirmed ones.

    Parked refunds (pending, missing_payment_id) are submitted once their
    payment id resolves. Processing refunds whose gateway call timed out are
    sent again under the same idempotency key.
    """
    with txn() as cur:
        queued = list_queued_automatic_refunds(cur, limit=limit)
        unconfirmed = list_unconfirmed_gateway_refunds(cur, limit=limit)

    sweep = QueuedRefundSweep(examined=len(queued) + len(unconfirmed))
    if not queued and not unconfirmed:
        return sweep

    gateway = gateway or _get_gateway_client()
    for refund in queued:
        with txn() as cur:
            succeeded_tx = get_succeeded_transaction(cur, refund["booking_id"])
        payment_id = _resolve_gateway_payment_id(succeeded_tx, gateway)
        if payment_id is None:
            sweep.still_queued.append(refund["id"])
            continue
        try:
            _submit_automatic_refund(refund["id"], payment_id, actor=SYSTEM_ACTOR, gateway=gateway)
        except InvalidRefundTransitionError:
            continue
        sweep.submitted.append(refund["id"])

    for refund in unconfirmed:
        payment_id = (refund.get("metadata") or {}).get("gateway_payment_id")
        if not payment_id:
            sweep.outcome_unknown.append(refund["id"])
            continue
        updated = _send_to_gateway(refund, payment_id, gateway=gateway)
        if (updated.get("metadata") or {}).get("gateway_outcome_unknown"):
            sweep.outcome_unknown.append(refund["id"])
        else:
            sweep.resubmitted.append(refund["id"])

    logger.info(
        "queued refund sweep finished",
        extra={
            "extra_fields": safe_log_context(
                correlationId=get_correlation_id(),
                examined=sweep.examined,
                submitted=len(sweep.submitted),
                still_queued=len(sweep.still_queued),
                resubmitted=len(sweep.resubmitted),
                outcome_unknown=len(sweep.outcome_unknown),
            )
        },
    )
    return sweep


def _refund_named_by_event(
    cur: PgCursor,
    refund_id: int,
    *,
    gateway_refund_id: str | None,
    payment_id: str | None,
) -> list[dict[str, Any]]:
    """The refund whose id we sent in the gateway metadata, if it is consistent."""
    refund = fetch_refund(cur, refund_id)
    if refund is None:
        return []
    known_id = refund.get("gateway_refund_id")
    if known_id and gateway_refund_id and known_id != gateway_refund_id:
        return []
    sent_payment_id = (refund.get("metadata") or {}).get("gateway_payment_id")
    if sent_payment_id and payment_id and sent_payment_id != payment_id:
        return []
    return [refund]


def _sole_open_refund_for_payment(
    cur: PgCursor,
    payment_id: str,
    amount: Decimal | None,
) -> list[dict[str, Any]]:
    """The one open automatic refund an unnamed gateway refund can belong to.

    Returns an empty list when the match is ambiguous.
    """
    tx = find_transaction_by_provider_id(cur, payment_id)
    if tx is None:
        return []
    open_refunds = list_open_automatic_refunds(cur, tx["booking_id"])
    if amount is not None:
        open_refunds = [r for r in open_refunds if Decimal(r["amount"]) == amount]
    if len(open_refunds) > 1:
        logger.warning(
            "gateway refund event matches several open refunds; not applied",
            extra={
                "extra_fields": safe_log_context(
                    correlationId=get_correlation_id(),
                    booking_id=tx["booking_id"],
                    payment_prefix=id_prefix(payment_id),
                    candidates=len(open_refunds),
                )
            },
        )
        return []
    return open_refunds


def apply_gateway_refund_update(
    *,
    gateway_refund_id: str | None,
    succeeded: bool,
    payment_id: str | None = None,
    failure_reason: str | None = None,
    amount: Decimal | None = None,
    refund_id: int | None = None,
) -> list[dict[str, Any]]:
    """Advance automatic refunds from a refund.* / payment.refunded event.

    Refunds are matched by gateway_refund_id, then by the refund_id we put
    in the gateway metadata. Failing both, the event applies to the booking
    that owns payment_id only if exactly one open automatic refund there
    fits (same amount when amount is given). Refunds already in a terminal
    state are left alone, so redelivery is harmless.

    Returns:
        Refund rows that actually changed.
    """
    target = RefundStatus.COMPLETED if succeeded else RefundStatus.FAILED
    changed: list[dict[str, Any]] = []
    gateway_fields = {"gateway_refund_id": gateway_refund_id} if gateway_refund_id else {}

    with txn() as cur:
        candidates = (
            find_refunds_by_gateway_id(cur, gateway_refund_id) if gateway_refund_id else []
        )
        if not candidates and refund_id is not None:
            candidates = _refund_named_by_event(
                cur, refund_id, gateway_refund_id=gateway_refund_id, payment_id=payment_id
            )
        if not candidates and payment_id:
            candidates = _sole_open_refund_for_payment(cur, payment_id, amount)

        for candidate in candidates:
            refund = lock_refund(cur, candidate["id"])
            if refund is None or RefundStatus(refund["status"]) in TERMINAL_REFUND_STATUSES:
                continue
            if refund["refund_type"] != RefundType.AUTOMATIC.value:
                continue

            if refund["status"] == RefundStatus.PENDING.value:
                refund = _transition_locked(
                    cur,
                    refund,
                    RefundStatus.PROCESSING,
                    actor=SYSTEM_ACTOR,
                    action="status_change",
                    details="Gateway reported refund outcome",
                    fields={"processed_at": utc_now()},
                )

            metadata = dict(refund.get("metadata") or {})
            metadata.pop("gateway_outcome_unknown", None)
            if succeeded:
                updated = _transition_locked(
                    cur,
                    refund,
                    target,
                    actor=SYSTEM_ACTOR,
                    action="refund_completed",
                    details=f"Gateway confirmed refund {id_prefix(gateway_refund_id)}",
                    fields={**gateway_fields, "completed_at": utc_now(), "metadata": metadata},
                )
                _mark_booking_refunded_if_covered(cur, updated["booking_id"])
            else:
                reason = failure_reason or "Refund failed"
                updated = _transition_locked(
                    cur,
                    refund,
                    target,
                    actor=SYSTEM_ACTOR,
                    action="refund_failed",
                    details=reason,
                    fields={**gateway_fields, "notes": reason, "metadata": metadata},
                )
            changed.append(updated)

    for refund in changed:
        logger.info(
            "refund updated from gateway event",
            extra={"extra_fields": _log_fields(refund, new_status=refund["status"])},
        )
        _notify_outcome(refund)
    return changed


# ── Manual flow ──────────────────────────────────────────


def validate_receipt(data: bytes, content_type: str | None) -> str:
    """Check receipt type and size; return the file extension to store it with.

    Raises:
        ReceiptValidationError: Empty, larger than 10 MB, or not JPEG/PNG/PDF.
    """
    normalized = (content_type or "").split(";")[0].strip().lower()
    if normalized not in ALLOWED_RECEIPT_TYPES:
        raise ReceiptValidationError(
            "Receipt must be a JPEG, PNG or PDF file", code="INVALID_RECEIPT_TYPE"
        )
    if not data:
        raise ReceiptValidationError("Receipt file is empty", code="EMPTY_RECEIPT")
    if len(data) > MAX_RECEIPT_BYTES:
        raise ReceiptValidationError(
            "Receipt exceeds the 10 MB limit", code="RECEIPT_TOO_LARGE"
        )
    return ALLOWED_RECEIPT_TYPES[normalized]


def _require_uploadable(refund: dict[str, Any]) -> None:
    if refund["refund_type"] != RefundType.MANUAL.value:
        raise ReceiptNotAllowedError("Receipts are only accepted for manual refunds")
    if refund["status"] not in (RefundStatus.PENDING.value, RefundStatus.PROCESSING.value):
        raise ReceiptNotAllowedError(f"Refund is {refund['status']}; receipt not accepted")


def upload_refund_receipt(
    refund_id: int,
    *,
    data: bytes,
    content_type: str | None,
    actor: Actor,
    storage: ReceiptStorage | None = None,
) -> dict[str, Any]:
    """Store a manual refund receipt and attach it to the refund.

    A pending refund moves to processing. Any earlier verification is reset,
    since it applied to a different file.

    Raises:
        ReceiptValidationError: Bad type/size.
        RefundNotFoundError: Unknown refund.
        ReceiptNotAllowedError: Not manual, or not pending/processing.
    """
    extension = validate_receipt(data, content_type)

    with txn() as cur:
        refund = fetch_refund(cur, refund_id)
    if refund is None:
        raise RefundNotFoundError(f"Refund {refund_id} not found")
    _require_uploadable(refund)

    storage = storage or get_receipt_storage()
    path = f"refunds/refund_{refund_id}_{compact_timestamp()}{extension}"
    receipt_url = storage.save(data, path)

    fields = {
        "receipt_path": receipt_url,
        "receipt_verified": False,
        "receipt_verified_by": None,
    }
    with txn() as cur:
        refund = _lock_or_404(cur, refund_id)
        _require_uploadable(refund)
        if refund["status"] == RefundStatus.PENDING.value:
            fields["processed_by"] = actor.id
            fields["processed_at"] = utc_now()
            updated = _transition_locked(
                cur,
                refund,
                RefundStatus.PROCESSING,
                actor=actor,
                action="receipt_uploaded",
                details="Refund receipt uploaded; awaiting verification",
                fields=fields,
            )
        else:
            updated = update_refund_fields(cur, refund_id=refund_id, fields=fields)
            _audit(
                cur,
                refund_id,
                action="receipt_uploaded",
                previous_status=refund["status"],
                new_status=refund["status"],
                actor=actor,
                details="Refund receipt replaced; awaiting verification",
            )

    logger.info(
        "refund receipt uploaded",
        extra={"extra_fields": _log_fields(updated, size=len(data), extension=extension)},
    )
    return updated


def verify_refund_receipt(
    refund_id: int,
    *,
    approved: bool,
    actor: Actor,
    rejection_reason: str | None = None,
    complete: bool = True,
) -> dict[str, Any]:
    """Privileged verification of a manual refund receipt.

    Approval sets receipt_verified and, when ``complete`` is True, completes
    the refund in the same transaction. Rejection fails the refund.

    Raises:
        RefundNotFoundError: Unknown refund.
        ReceiptNotAllowedError: Not a manual refund in processing with a receipt.
        InvalidRefundTransitionError: Actor is not privileged.
    """
    if actor.type is ActorType.SYSTEM:
        raise InvalidRefundTransitionError("Receipt verification requires a staff or admin user")

    with txn() as cur:
        refund = _lock_or_404(cur, refund_id)
        if refund["refund_type"] != RefundType.MANUAL.value:
            raise ReceiptNotAllowedError("Only manual refunds carry receipts")
        if refund["status"] != RefundStatus.PROCESSING.value or not refund.get("receipt_path"):
            raise ReceiptNotAllowedError("Refund has no receipt awaiting verification")

        if approved:
            updated = update_refund_fields(
                cur,
                refund_id=refund_id,
                fields={"receipt_verified": True, "receipt_verified_by": actor.id},
            )
            _audit(
                cur,
                refund_id,
                action="receipt_verified",
                previous_status=refund["status"],
                new_status=refund["status"],
                actor=actor,
                details="Refund receipt verified",
            )
            if complete:
                updated = _transition_locked(
                    cur,
                    updated,
                    RefundStatus.COMPLETED,
                    actor=actor,
                    action="refund_approved",
                    details="Manual refund verified and completed",
                    fields={"completed_at": utc_now()},
                )
                _mark_booking_refunded_if_covered(cur, updated["booking_id"])
        else:
            reason = rejection_reason or "Refund rejected during verification"
            updated = _transition_locked(
                cur,
                refund,
                RefundStatus.FAILED,
                actor=actor,
                action="refund_rejected",
                details=reason,
                fields={
                    "receipt_verified": False,
                    "receipt_verified_by": actor.id,
                    "notes": reason,
                },
            )

    logger.info(
        "refund receipt reviewed",
        extra={
            "extra_fields": _log_fields(
                updated, approved=approved, new_status=updated["status"]
            )
        },
    )
    _notify_outcome(updated)
    return updated


def _require_completion_allowed(refund: dict[str, Any]) -> None:
    if refund["refund_type"] != RefundType.MANUAL.value:
        return
    if not refund.get("receipt_path"):
        raise ManualRefundGateError("Manual refund has no receipt")
    if not refund.get("receipt_verified"):
        raise ManualRefundGateError("Manual refund receipt has not been verified")


def complete_refund(
    refund_id: int,
    *,
    actor: Actor,
    gateway_refund_id: str | None = None,
) -> dict[str, Any]:
    """Mark a processing refund completed.

    Raises:
        ManualRefundGateError: Manual refund without a verified receipt.
        InvalidRefundTransitionError: Refund is not processing.
    """
    fields: dict[str, Any] = {"completed_at": utc_now()}
    if gateway_refund_id:
        fields["gateway_refund_id"] = gateway_refund_id
    updated = _transition(
        refund_id,
        RefundStatus.COMPLETED,
        actor=actor,
        action="refund_completed",
        details="Refund completed",
        fields=fields,
        guard=_require_completion_allowed,
    )
    _notify_outcome(updated)
    return updated


def _require_not_at_gateway(refund: dict[str, Any]) -> None:
    """Automatic refunds the gateway has seen are settled by gateway events only."""
    if refund["refund_type"] != RefundType.AUTOMATIC.value:
        return
    if refund.get("gateway_refund_id") or refund["status"] == RefundStatus.PROCESSING.value:
        raise InvalidRefundTransitionError(
            f"Refund {refund['id']} was submitted to the gateway; "
            "wait for the gateway to complete or fail it"
        )


def fail_refund(refund_id: int, *, actor: Actor, reason: str) -> dict[str, Any]:
    updated = _transition(
        refund_id,
        RefundStatus.FAILED,
        actor=actor,
        action="refund_failed",
        details=reason,
        fields={"notes": reason},
        guard=_require_not_at_gateway,
    )
    _notify_outcome(updated)
    return updated


def cancel_refund(refund_id: int, *, actor: Actor, reason: str) -> dict[str, Any]:
    """Cancel (deny) a refund that has not completed.

    Raises:
        InvalidRefundTransitionError: Refund is terminal, or is an automatic
            refund already submitted to the gateway.
    """
    return _transition(
        refund_id,
        RefundStatus.CANCELLED,
        actor=actor,
        action="refund_cancelled",
        details=reason,
        fields={"notes": reason, "processed_by": actor.id},
        guard=_require_not_at_gateway,
    )


# ── Reads ────────────────────────────────────────────────


def get_refund(refund_id: int) -> dict[str, Any]:
    with txn() as cur:
        refund = fetch_refund(cur, refund_id)
    if refund is None:
        raise RefundNotFoundError(f"Refund {refund_id} not found")
    return refund


def list_refunds_for_booking(booking_id: int, *, owner_id: int | None = None) -> list[dict[str, Any]]:
    """Refunds of a booking, newest first.

    Raises:
        BookingNotFoundError: Booking does not exist.
        NotBookingOwnerError: owner_id given and not the booking's owner.
    """
    with txn() as cur:
        booking = get_booking(cur, booking_id)
        if booking is None:
            raise BookingNotFoundError(f"Booking {booking_id} not found")
        if owner_id is not None and booking["user_id"] != owner_id:
            raise NotBookingOwnerError("Booking does not belong to the current user")
        return fetch_refunds_for_booking(cur, booking_id)


def get_audit_trail(refund_id: int) -> list[dict[str, Any]]:
    with txn() as cur:
        return list_audit_logs(cur, refund_id)

