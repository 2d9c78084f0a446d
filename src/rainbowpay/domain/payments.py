"""Payment initiation for a booking.

Opens a new payment attempt: a gateway source (e-wallet redirect), a
payment intent (card) or a manual pending row (cash / QR), records it in the
ledger and stores the platform/provider split. Settlement arrives later:
through the webhook dispatcher for gateway methods, or through staff
confirmation (ledger.settle_offline_payment) for cash and QR.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any

from rainbowpay.domain.errors import (
    BookingNotFoundError,
    NotBookingOwnerError,
    PaymentAlreadyProcessedError,
    UnsupportedPaymentMethodError,
)
from rainbowpay.domain.fees import (
    Split,
    SplitMode,
    compute_split,
    record_split,
    resolve_commission_rate,
    split_recipients,
)
from rainbowpay.domain.ledger import PaymentMethod, record_attempt
from rainbowpay.domain.reconciliation import reconcile
from rainbowpay.infra.db import txn
from rainbowpay.infra.repositories.bookings_repository import get_booking
from rainbowpay.infra.repositories.splits_repository import get_split_for_booking
from rainbowpay.infra.repositories.transactions_repository import (
    count_attempts,
    get_succeeded_transaction,
    list_transactions_for_booking,
)
from rainbowpay.observability.correlation import get_correlation_id
from rainbowpay.observability.logging import get_logger
from rainbowpay.observability.redaction import id_prefix, safe_log_context
from rainbowpay.paymongo.client import PaymongoClient

logger = get_logger(__name__)

CURRENCY = "PHP"

DEFAULT_SUCCESS_URL = "http://localhost:3000/payments/success"
DEFAULT_FAILED_URL = "http://localhost:3000/payments/failed"

# gateway source type per e-wallet method
_SOURCE_TYPES = {
    PaymentMethod.GCASH: "gcash",
    PaymentMethod.PAYMAYA: "paymaya",
}


@dataclass
class PaymentInitiation:
    transaction: dict[str, Any]
    split: Split
    checkout_url: str | None = None
    client_key: str | None = None
    instructions: list[str] = field(default_factory=list)

    def as_dict(self) -> dict[str, Any]:
        body: dict[str, Any] = {
            "transaction_id": self.transaction["id"],
            "status": self.transaction["status"],
            "payment_method": self.transaction["payment_method"],
            "amount": str(self.transaction["amount"]),
            "split": self.split.as_dict(),
        }
        if self.checkout_url:
            body["checkout_url"] = self.checkout_url
        if self.client_key:
            body["client_key"] = self.client_key
        if self.instructions:
            body["instructions"] = self.instructions
        return body


_gateway_client: PaymongoClient | None = None


def _get_gateway_client() -> PaymongoClient:
    """Gateway client instance (allows test injection)."""
    global _gateway_client
    if _gateway_client is None:
        _gateway_client = PaymongoClient()
    return _gateway_client


def _redirect_urls(booking_id: int) -> dict[str, str]:
    success = os.environ.get("PAYMONGO_SUCCESS_URL", DEFAULT_SUCCESS_URL)
    failed = os.environ.get("PAYMONGO_FAILED_URL", DEFAULT_FAILED_URL)
    return {
        "success": f"{success}?booking_id={booking_id}",
        "failed": f"{failed}?booking_id={booking_id}",
    }


def _parse_method(raw: PaymentMethod | str) -> PaymentMethod:
    try:
        return PaymentMethod(raw)
    except ValueError:
        raise UnsupportedPaymentMethodError(f"Unsupported payment method '{raw}'") from None


def initiate_payment(
    booking_id: int,
    method: PaymentMethod | str,
    *,
    split_mode: SplitMode,
    owner_id: int | None = None,
    gateway: PaymongoClient | None = None,
) -> PaymentInitiation:
    """Open a payment attempt for a booking.

    Args:
        booking_id: Booking to pay.
        method: Requested payment method.
        split_mode: How the commission split is settled.
        owner_id: When set, the booking must belong to this user.
        gateway: Gateway client override.

    Returns:
        PaymentInitiation with the pending transaction and, for gateway
        methods, the checkout URL or client key.

    Raises:
        UnsupportedPaymentMethodError: Unknown method.
        BookingNotFoundError: Booking does not exist.
        NotBookingOwnerError: owner_id given and not the booking's owner.
        PaymentAlreadyProcessedError: Booking already has a settled payment.
        GatewayError: Gateway rejected or did not answer the creation call.
    """
    method = _parse_method(method)
    correlation_id = get_correlation_id()

    with txn() as cur:
        booking = get_booking(cur, booking_id)
        if booking is None:
            raise BookingNotFoundError(f"Booking {booking_id} not found")
        if owner_id is not None and booking["user_id"] != owner_id:
            raise NotBookingOwnerError("Booking does not belong to the current user")
        succeeded_tx = get_succeeded_transaction(cur, booking_id)
        attempt = count_attempts(cur, booking_id, method.value) + 1

    if succeeded_tx is not None:
        raise PaymentAlreadyProcessedError(f"Booking {booking_id} is already paid")

    if booking["payment_status"] == "paid":
        # marked paid with nothing in the ledger: repair before charging again
        reconcile(booking_id, dry_run=False)

    split = compute_split(booking["total_price"], resolve_commission_rate(booking.get("commission_rate")))
    amount = split.total_amount
    idempotency_key = f"booking:{booking_id}:{method.value}:{attempt}"

    checkout_url = None
    client_key = None
    source_id = None
    payment_intent_id = None
    instructions: list[str] = []

    if method in _SOURCE_TYPES:
        source = (gateway or _get_gateway_client()).create_source(
            amount=amount,
            currency=CURRENCY,
            source_type=_SOURCE_TYPES[method],
            redirect_urls=_redirect_urls(booking_id),
            idempotency_key=idempotency_key,
            correlation_id=correlation_id,
        )
        source_id = source.id
        checkout_url = source.checkout_url
    elif method is PaymentMethod.CARD:
        recipients = None
        if split_mode is SplitMode.LIVE and booking.get("provider_merchant_id"):
            recipients = split_recipients(split, booking["provider_merchant_id"])
        intent = (gateway or _get_gateway_client()).create_payment_intent(
            amount=amount,
            currency=CURRENCY,
            allowed_methods=["card"],
            description=f"Booking #{booking_id}",
            idempotency_key=idempotency_key,
            metadata={"booking_id": str(booking_id)},
            split_recipients=recipients,
            correlation_id=correlation_id,
        )
        payment_intent_id = intent.id
        client_key = intent.client_key
    elif method is PaymentMethod.QR_CODE:
        instructions = [
            "Scan the service provider's QR code with your e-wallet app",
            f"Pay exactly PHP {amount:,}",
            "Keep the confirmation screen; the provider confirms receipt",
        ]
    else:
        instructions = [f"Pay PHP {amount:,} in cash to the service provider"]

    transaction = record_attempt(
        booking_id,
        amount,
        method,
        source_id=source_id,
        payment_intent_id=payment_intent_id,
        currency=CURRENCY,
        checkout_url=checkout_url,
    )

    with txn() as cur:
        record_split(
            cur,
            booking_id=booking_id,
            split=split,
            mode=split_mode,
            transaction_id=transaction["id"],
            main_payment_id=payment_intent_id or source_id,
        )

    logger.info(
        "payment initiated",
        extra={
            "extra_fields": safe_log_context(
                correlationId=correlation_id,
                booking_id=booking_id,
                transaction_id=transaction["id"],
                method=method.value,
                attempt=attempt,
                split_mode=split_mode.value,
                ref_prefix=id_prefix(payment_intent_id or source_id),
            )
        },
    )

    return PaymentInitiation(
        transaction=transaction,
        split=split,
        checkout_url=checkout_url,
        client_key=client_key,
        instructions=instructions,
    )


def get_booking_payments(booking_id: int) -> dict[str, Any]:
    """Booking payment view: owner, ledger rows and split record.

    Raises:
        BookingNotFoundError: Booking does not exist.
    """
    with txn() as cur:
        booking = get_booking(cur, booking_id)
        if booking is None:
            raise BookingNotFoundError(f"Booking {booking_id} not found")
        transactions = list_transactions_for_booking(cur, booking_id)
        split = get_split_for_booking(cur, booking_id)

    return {
        "booking_id": booking_id,
        "user_id": booking["user_id"],
        "payment_status": booking["payment_status"],
        "total_price": Decimal(booking["total_price"]),
        "transactions": transactions,
        "split": split,
    }
