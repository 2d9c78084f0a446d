"""Typed errors raised by the payment engine.

Each error carries a stable machine-readable ``code`` and the HTTP status the
API layer maps it to. Routes translate them with ``to_http_exception``; the
webhook route is the only caller that converts failures into a 200.
"""

from __future__ import annotations


class PaymentEngineError(Exception):
    """Base class for engine errors."""

    code = "PAYMENT_ENGINE_ERROR"
    http_status = 500

    def __init__(self, message: str, *, code: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code

    def to_detail(self) -> dict[str, str]:
        return {"code": self.code, "message": self.message}


# ── Gateway / webhook edge ────────────────────────────────


class GatewayError(PaymentEngineError):
    """Upstream processor returned non-2xx, timed out or was unreachable.

    Retry policy belongs to the caller; mutating calls are never retried
    automatically.
    """

    code = "GATEWAY_ERROR"
    http_status = 502

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        detail: str | None = None,
        gateway_code: str | None = None,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.detail = detail
        self.gateway_code = gateway_code


class SignatureValidationError(PaymentEngineError):
    """Webhook signature missing, malformed or not matching the body."""

    code = "INVALID_SIGNATURE"
    http_status = 401


class MalformedEventError(PaymentEngineError):
    """Webhook body is not JSON or lacks the expected envelope."""

    code = "MALFORMED_EVENT"
    http_status = 400


class UnknownEventType(PaymentEngineError):
    """Event type with no handler. Logged and acknowledged, never surfaced."""

    code = "UNKNOWN_EVENT_TYPE"
    http_status = 200


# ── Refunds ──────────────────────────────────────────────


class IneligibleRefundError(PaymentEngineError):
    """Booking cannot be refunded (or not for this amount)."""

    code = "REFUND_INELIGIBLE"
    http_status = 400


class ReceiptValidationError(PaymentEngineError):
    """Uploaded receipt has a disallowed type or size."""

    code = "INVALID_RECEIPT"
    http_status = 400


class ReceiptNotAllowedError(PaymentEngineError):
    """Refund is not in a state that accepts a receipt."""

    code = "RECEIPT_NOT_ALLOWED"
    http_status = 409


class ManualRefundGateError(PaymentEngineError):
    """Manual refund completion attempted without a verified receipt."""

    code = "RECEIPT_NOT_VERIFIED"
    http_status = 409


class InvalidRefundTransitionError(PaymentEngineError):
    """Requested refund status change is not allowed from the current status."""

    code = "INVALID_REFUND_TRANSITION"
    http_status = 409


class RefundNotFoundError(PaymentEngineError):
    code = "REFUND_NOT_FOUND"
    http_status = 404


# ── Bookings / payments ──────────────────────────────────


class BookingNotFoundError(PaymentEngineError):
    code = "BOOKING_NOT_FOUND"
    http_status = 404


class NotBookingOwnerError(PaymentEngineError):
    code = "NOT_BOOKING_OWNER"
    http_status = 403


class PaymentAlreadyProcessedError(PaymentEngineError):
    """Booking already has a settled payment."""

    code = "PAYMENT_ALREADY_PROCESSED"
    http_status = 409


class UnsupportedPaymentMethodError(PaymentEngineError):
    code = "UNSUPPORTED_PAYMENT_METHOD"
    http_status = 400


class TransactionNotFoundError(PaymentEngineError):
    code = "TRANSACTION_NOT_FOUND"
    http_status = 404


class InvalidPaymentTransitionError(PaymentEngineError):
    """Payment attempt cannot be settled this way from its current state."""

    code = "INVALID_PAYMENT_TRANSITION"
    http_status = 409


# ── Reconciliation ───────────────────────────────────────


class ReconciliationConflictError(PaymentEngineError):
    """Booking changed between drift detection and repair.

    Recorded in the reconciliation report; never propagated to callers.
    """

    code = "RECONCILIATION_CONFLICT"
    http_status = 409

    def __init__(self, message: str, *, booking_id: int, observed_status: str | None) -> None:
        super().__init__(message)
        self.booking_id = booking_id
        self.observed_status = observed_status
