"""Gateway event dispatch.

Events are already signature-checked and shape-validated (see
rainbowpay.paymongo.webhook) when they reach dispatch(). Each handler runs in
its own error boundary: a failure is logged as an alert and reported in the
DispatchResult, never raised, so the gateway is always acknowledged once the
event parsed. Reconciliation repairs whatever a failed handler left behind.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from typing import Any, Callable

from rainbowpay.domain.ledger import TransactionStatus, apply_status
from rainbowpay.domain.refunds import (
    apply_gateway_refund_update,
    reconcile_queued_automatic_refunds,
)
from rainbowpay.observability.correlation import get_correlation_id
from rainbowpay.observability.logging import get_logger, log_alert
from rainbowpay.observability.redaction import id_prefix, safe_log_context
from rainbowpay.paymongo.client import from_minor_units
from rainbowpay.paymongo.webhook import EventResource, WebhookEnvelope

logger = get_logger(__name__)


class EventKind(str, Enum):
    SOURCE_CHARGEABLE = "source.chargeable"
    PAYMENT_PAID = "payment.paid"
    PAYMENT_FAILED = "payment.failed"
    PAYMENT_REFUNDED = "payment.refunded"
    REFUND_SUCCEEDED = "refund.succeeded"
    REFUND_FAILED = "refund.failed"
    UNKNOWN = "unknown"

    @classmethod
    def from_event_type(cls, event_type: str) -> "EventKind":
        try:
            return cls(event_type)
        except ValueError:
            return cls.UNKNOWN


@dataclass
class DispatchResult:
    event_type: str
    kind: EventKind
    handled: bool
    outcome: str


def _payment_lookup_ids(resource: EventResource) -> list[str]:
    """Candidate ids a payment event can be matched on, most specific first."""
    attrs = resource.attributes
    source = attrs.get("source") or {}
    candidates = [attrs.get("payment_intent_id"), source.get("id"), resource.id]
    seen: list[str] = []
    for candidate in candidates:
        if candidate and candidate not in seen:
            seen.append(candidate)
    return seen


# ── Handlers ─────────────────────────────────────────────


def _handle_source_chargeable(resource: EventResource) -> str:
    result = apply_status(resource.id, TransactionStatus.SUCCEEDED)
    return result.outcome.value


def _handle_payment_paid(resource: EventResource) -> str:
    result = apply_status(
        _payment_lookup_ids(resource),
        TransactionStatus.SUCCEEDED,
        provider_transaction_id=resource.id,
    )
    if result.booking_id is not None and result.status == TransactionStatus.SUCCEEDED.value:
        released = reconcile_queued_automatic_refunds(result.booking_id, resource.id)
        if released:
            logger.info(
                "queued refunds released by payment confirmation",
                extra={
                    "extra_fields": safe_log_context(
                        correlationId=get_correlation_id(),
                        booking_id=result.booking_id,
                        released=len(released),
                    )
                },
            )
    return result.outcome.value


def _handle_payment_failed(resource: EventResource) -> str:
    error = resource.attributes.get("last_payment_error") or {}
    reason = (error.get("message") if isinstance(error, dict) else None) or "Payment failed"
    result = apply_status(
        _payment_lookup_ids(resource),
        TransactionStatus.FAILED,
        failure_reason=reason,
    )
    return result.outcome.value


def _refund_amount(attributes: dict[str, Any]) -> Decimal | None:
    amount = attributes.get("amount")
    if isinstance(amount, int) and not isinstance(amount, bool):
        return from_minor_units(amount)
    return None


def _tagged_refund_id(attributes: dict[str, Any]) -> int | None:
    """Our refund id, echoed back in the metadata we sent with the refund."""
    metadata = attributes.get("metadata")
    if not isinstance(metadata, dict):
        return None
    value = str(metadata.get("refund_id") or "")
    return int(value) if value.isascii() and value.isdigit() else None


def _handle_payment_refunded(resource: EventResource) -> str:
    refunds = resource.attributes.get("refunds") or []
    items = [r for r in refunds if isinstance(r, dict) and r.get("id")]
    changed: list[dict[str, Any]] = []
    if items:
        for item in items:
            attributes = item.get("attributes") if isinstance(item.get("attributes"), dict) else {}
            changed.extend(
                apply_gateway_refund_update(
                    gateway_refund_id=item["id"],
                    succeeded=True,
                    payment_id=resource.id,
                    amount=_refund_amount(attributes),
                    refund_id=_tagged_refund_id(attributes),
                )
            )
    else:
        # no refund detail: applies only when the booking has a single open refund
        changed = apply_gateway_refund_update(
            gateway_refund_id=None,
            succeeded=True,
            payment_id=resource.id,
        )
    return "applied" if changed else "no_change"


def _handle_refund_succeeded(resource: EventResource) -> str:
    changed = apply_gateway_refund_update(
        gateway_refund_id=resource.id,
        succeeded=True,
        payment_id=resource.attributes.get("payment_id"),
        amount=_refund_amount(resource.attributes),
        refund_id=_tagged_refund_id(resource.attributes),
    )
    return "applied" if changed else "no_change"


def _handle_refund_failed(resource: EventResource) -> str:
    changed = apply_gateway_refund_update(
        gateway_refund_id=resource.id,
        succeeded=False,
        payment_id=resource.attributes.get("payment_id"),
        failure_reason=resource.attributes.get("failure_reason") or "Refund failed",
        amount=_refund_amount(resource.attributes),
        refund_id=_tagged_refund_id(resource.attributes),
    )
    return "applied" if changed else "no_change"


def _handle_unknown(resource: EventResource) -> str:
    return "ignored"


HANDLERS: dict[EventKind, Callable[[EventResource], str]] = {
    EventKind.SOURCE_CHARGEABLE: _handle_source_chargeable,
    EventKind.PAYMENT_PAID: _handle_payment_paid,
    EventKind.PAYMENT_FAILED: _handle_payment_failed,
    EventKind.PAYMENT_REFUNDED: _handle_payment_refunded,
    EventKind.REFUND_SUCCEEDED: _handle_refund_succeeded,
    EventKind.REFUND_FAILED: _handle_refund_failed,
    EventKind.UNKNOWN: _handle_unknown,
}


def dispatch(event: WebhookEnvelope) -> DispatchResult:
    """Route a parsed event to its handler.

    Returns:
        DispatchResult. ``handled`` is False for unknown event types and for
        handlers that raised (the error is logged with alert=true).
    """
    correlation_id = get_correlation_id()
    kind = EventKind.from_event_type(event.event_type)
    resource = event.resource
    fields = safe_log_context(
        correlationId=correlation_id,
        event_id_prefix=id_prefix(event.event_id),
        event_type=event.event_type,
        resource_prefix=id_prefix(resource.id),
    )

    if kind is EventKind.UNKNOWN:
        logger.info("unhandled webhook event type", extra={"extra_fields": fields})
        return DispatchResult(event.event_type, kind, handled=False, outcome=_handle_unknown(resource))

    try:
        outcome = HANDLERS[kind](resource)
    except Exception:
        log_alert(logger, "webhook handler failed", fields)
        return DispatchResult(event.event_type, kind, handled=False, outcome="handler_error")

    logger.info(
        "webhook event dispatched",
        extra={"extra_fields": {**fields, "outcome": outcome}},
    )
    return DispatchResult(event.event_type, kind, handled=True, outcome=outcome)
