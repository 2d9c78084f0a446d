"""Transaction ledger: payment attempts and their state machine.

States: pending -> processing -> {succeeded, failed, cancelled}.

apply_status() (gateway events) and settle_offline_payment() (staff, cash /
QR) are the only writers of settlement outcomes. Both lock the row,
compare-and-set the status and, on success, mark the booking paid and bind
its split in the same transaction. A row already in a terminal state is
left untouched, which is what makes redelivered and out-of-order webhooks
safe: the first terminal transition wins.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from typing import Any, Iterable

from psycopg2.extensions import cursor as PgCursor

from rainbowpay.domain.errors import InvalidPaymentTransitionError, TransactionNotFoundError
from rainbowpay.infra.db import txn
from rainbowpay.infra.notifications import NotificationKind, notify
from rainbowpay.infra.repositories.bookings_repository import set_payment_status
from rainbowpay.infra.repositories.splits_repository import bind_split_to_transaction
from rainbowpay.infra.repositories.transactions_repository import (
    attach_provider_transaction_id,
    get_succeeded_transaction,
    insert_transaction,
    lock_transaction,
    lock_transaction_by_gateway_ref,
    transition_transaction,
)
from rainbowpay.observability.correlation import get_correlation_id
from rainbowpay.observability.logging import get_logger
from rainbowpay.observability.redaction import id_prefix, safe_log_context

logger = get_logger(__name__)


class TransactionStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"


class PaymentMethod(str, Enum):
    GCASH = "gcash"
    CARD = "card"
    PAYMAYA = "paymaya"
    CASH = "cash"
    QR_CODE = "qr_code"


TERMINAL_STATUSES = frozenset({
    TransactionStatus.SUCCEEDED,
    TransactionStatus.FAILED,
    TransactionStatus.CANCELLED,
})

# target status -> statuses it may be entered from
ALLOWED_FROM: dict[TransactionStatus, frozenset[TransactionStatus]] = {
    TransactionStatus.PROCESSING: frozenset({TransactionStatus.PENDING}),
    TransactionStatus.SUCCEEDED: frozenset({TransactionStatus.PENDING, TransactionStatus.PROCESSING}),
    TransactionStatus.FAILED: frozenset({TransactionStatus.PENDING, TransactionStatus.PROCESSING}),
    TransactionStatus.CANCELLED: frozenset({TransactionStatus.PENDING, TransactionStatus.PROCESSING}),
}

_NOTIFY_ON = {
    TransactionStatus.SUCCEEDED: NotificationKind.PAYMENT_CONFIRMED,
    TransactionStatus.FAILED: NotificationKind.PAYMENT_FAILED,
}


class ApplyOutcome(str, Enum):
    APPLIED = "applied"
    ALREADY_TERMINAL = "already_terminal"
    NOT_FOUND = "not_found"
    INVALID_TRANSITION = "invalid_transition"


@dataclass
class ApplyResult:
    outcome: ApplyOutcome
    transaction_id: int | None = None
    booking_id: int | None = None
    previous_status: str | None = None
    status: str | None = None

    @property
    def applied(self) -> bool:
        return self.outcome is ApplyOutcome.APPLIED


def normalize_payment_method(raw: str | None) -> PaymentMethod:
    """Map free-form method names onto PaymentMethod (cash when unknown)."""
    method = (raw or "").strip().lower()
    if "gcash" in method:
        return PaymentMethod.GCASH
    if "card" in method or "credit" in method or "debit" in method:
        return PaymentMethod.CARD
    if "maya" in method:
        return PaymentMethod.PAYMAYA
    if "qr" in method or "scan" in method:
        return PaymentMethod.QR_CODE
    return PaymentMethod.CASH


def record_attempt(
    booking_id: int,
    amount: Decimal,
    method: PaymentMethod | str,
    *,
    source_id: str | None = None,
    payment_intent_id: str | None = None,
    currency: str = "PHP",
    checkout_url: str | None = None,
) -> dict[str, Any]:
    """Create a 'pending' transaction for a new payment attempt.

    Args:
        booking_id: Booking being paid.
        amount: Major-unit amount.
        method: Payment method.
        source_id: Gateway source id (e-wallet redirect flows).
        payment_intent_id: Gateway payment intent id (card flows).
        currency: ISO currency code.
        checkout_url: Redirect URL returned by the gateway, if any.

    Returns:
        The inserted transaction row.
    """
    method = PaymentMethod(method)
    provider = "manual" if method in (PaymentMethod.CASH, PaymentMethod.QR_CODE) else "paymongo"

    with txn() as cur:
        row = insert_transaction(
            cur,
            booking_id=booking_id,
            amount=amount,
            currency=currency,
            payment_method=method.value,
            provider=provider,
            payment_intent_id=payment_intent_id,
            source_id=source_id,
            checkout_url=checkout_url,
        )

    logger.info(
        "payment attempt recorded",
        extra={
            "extra_fields": safe_log_context(
                correlationId=get_correlation_id(),
                booking_id=booking_id,
                transaction_id=row["id"],
                method=method.value,
                ref_prefix=id_prefix(payment_intent_id or source_id),
            )
        },
    )
    return row


def _apply_locked(
    cur: PgCursor,
    row: dict[str, Any],
    new_status: TransactionStatus,
    *,
    provider_transaction_id: str | None,
    failure_reason: str | None,
    correlation_id: str | None,
) -> ApplyResult:
    """Move a locked transaction row to new_status (first terminal state wins).

    On success the booking is marked paid and its split is rebound to this
    transaction, all on the caller's cursor.
    """
    current = TransactionStatus(row["status"])

    if current in TERMINAL_STATUSES:
        # a late payment.paid may still carry the settled payment id
        if (
            current is TransactionStatus.SUCCEEDED
            and new_status is TransactionStatus.SUCCEEDED
            and provider_transaction_id
            and not row.get("provider_transaction_id")
        ):
            attach_provider_transaction_id(
                cur,
                transaction_id=row["id"],
                provider_transaction_id=provider_transaction_id,
            )
        logger.info(
            "transaction already terminal; skipping update",
            extra={
                "extra_fields": safe_log_context(
                    correlationId=correlation_id,
                    transaction_id=row["id"],
                    current_status=current.value,
                    requested_status=new_status.value,
                )
            },
        )
        return ApplyResult(
            outcome=ApplyOutcome.ALREADY_TERMINAL,
            transaction_id=row["id"],
            booking_id=row["booking_id"],
            previous_status=current.value,
            status=current.value,
        )

    allowed = ALLOWED_FROM.get(new_status, frozenset())
    if current not in allowed:
        logger.warning(
            "transaction transition not allowed",
            extra={
                "extra_fields": safe_log_context(
                    correlationId=correlation_id,
                    transaction_id=row["id"],
                    current_status=current.value,
                    requested_status=new_status.value,
                )
            },
        )
        return ApplyResult(
            outcome=ApplyOutcome.INVALID_TRANSITION,
            transaction_id=row["id"],
            booking_id=row["booking_id"],
            previous_status=current.value,
            status=current.value,
        )

    updated = transition_transaction(
        cur,
        transaction_id=row["id"],
        expected_statuses=[s.value for s in allowed],
        new_status=new_status.value,
        provider_transaction_id=provider_transaction_id,
        failure_reason=failure_reason,
    )
    if updated is None:
        # row is locked, so this only happens if the lock was bypassed
        raise RuntimeError(f"transaction {row['id']} changed under lock")

    if new_status is TransactionStatus.SUCCEEDED:
        set_payment_status(cur, row["booking_id"], "paid")
        bind_split_to_transaction(
            cur,
            booking_id=row["booking_id"],
            transaction_id=row["id"],
            main_payment_id=(
                row.get("payment_intent_id")
                or row.get("source_id")
                or updated.get("provider_transaction_id")
            ),
        )

    return ApplyResult(
        outcome=ApplyOutcome.APPLIED,
        transaction_id=row["id"],
        booking_id=row["booking_id"],
        previous_status=current.value,
        status=new_status.value,
    )


def _after_applied(result: ApplyResult, correlation_id: str | None) -> None:
    logger.info(
        "transaction status applied",
        extra={
            "extra_fields": safe_log_context(
                correlationId=correlation_id,
                transaction_id=result.transaction_id,
                booking_id=result.booking_id,
                previous_status=result.previous_status,
                new_status=result.status,
            )
        },
    )
    kind = _NOTIFY_ON.get(TransactionStatus(result.status))
    if kind is not None:
        notify(result.booking_id, kind, dedupe_key=f"tx{result.transaction_id}")


def apply_status(
    lookup_id: str | Iterable[str],
    new_status: TransactionStatus | str,
    *,
    provider_transaction_id: str | None = None,
    failure_reason: str | None = None,
) -> ApplyResult:
    """Apply a gateway-reported status to the matching transaction.

    Args:
        lookup_id: Gateway id(s) matched against payment_intent_id OR
            source_id. A payment event may carry both, so a list is accepted.
        new_status: Target status.
        provider_transaction_id: Settled gateway payment id, recorded on success.
        failure_reason: Gateway failure message, recorded on failure.

    Returns:
        ApplyResult describing what happened. Unknown ids are logged and
        reported as NOT_FOUND; no record is created for them.
    """
    new_status = TransactionStatus(new_status)
    lookup_ids = [lookup_id] if isinstance(lookup_id, str) else [i for i in lookup_id if i]
    correlation_id = get_correlation_id()

    with txn() as cur:
        row = lock_transaction_by_gateway_ref(cur, lookup_ids)

        if row is None:
            logger.warning(
                "no transaction for gateway reference; event dropped",
                extra={
                    "extra_fields": safe_log_context(
                        correlationId=correlation_id,
                        lookup_prefixes=",".join(id_prefix(i) or "" for i in lookup_ids),
                        new_status=new_status.value,
                    )
                },
            )
            return ApplyResult(outcome=ApplyOutcome.NOT_FOUND)

        result = _apply_locked(
            cur,
            row,
            new_status,
            provider_transaction_id=provider_transaction_id,
            failure_reason=failure_reason,
            correlation_id=correlation_id,
        )

    if result.applied:
        _after_applied(result, correlation_id)
    return result


def settle_offline_payment(
    transaction_id: int,
    *,
    confirmed: bool,
    actor_id: int | None,
    reason: str | None = None,
) -> ApplyResult:
    """Staff confirmation (or rejection) of a cash / QR payment attempt.

    Offline attempts carry no gateway id, so no webhook can ever settle them.
    Confirmation goes through the same locked compare-and-set as gateway
    events: the booking is marked paid and the split bound in one
    transaction.

    Raises:
        TransactionNotFoundError: Unknown transaction.
        InvalidPaymentTransitionError: Not a manual attempt, already final, or
            the booking was already paid by another attempt.
    """
    new_status = TransactionStatus.SUCCEEDED if confirmed else TransactionStatus.FAILED
    correlation_id = get_correlation_id()

    with txn() as cur:
        row = lock_transaction(cur, transaction_id)
        if row is None:
            raise TransactionNotFoundError(f"Transaction {transaction_id} not found")
        if row["provider"] != "manual":
            raise InvalidPaymentTransitionError(
                "Gateway payments are settled by gateway events only"
            )
        if confirmed and TransactionStatus(row["status"]) not in TERMINAL_STATUSES:
            settled = get_succeeded_transaction(cur, row["booking_id"])
            if settled is not None:
                raise InvalidPaymentTransitionError(
                    f"Booking {row['booking_id']} already has a settled payment"
                )
        result = _apply_locked(
            cur,
            row,
            new_status,
            provider_transaction_id=None,
            failure_reason=None if confirmed else (reason or "Payment not received"),
            correlation_id=correlation_id,
        )
        if not result.applied:
            raise InvalidPaymentTransitionError(
                f"Transaction {transaction_id} is already {result.status}"
            )

    logger.info(
        "offline payment settled",
        extra={
            "extra_fields": safe_log_context(
                correlationId=correlation_id,
                transaction_id=transaction_id,
                booking_id=result.booking_id,
                confirmed=confirmed,
                actor_id=actor_id,
            )
        },
    )
    _after_applied(result, correlation_id)
    return result
