"""Outbound notification hand-off.

The engine never delivers email/SMS itself: it enqueues a small task for the
notification service and moves on. Enqueue failures are logged and swallowed
so a notification problem can never roll back or block a financial change.
"""

from __future__ import annotations

import os
from enum import Enum

from rainbowpay.observability.correlation import get_correlation_id
from rainbowpay.observability.logging import get_logger
from rainbowpay.observability.redaction import safe_log_context
from rainbowpay.tasks.client import TasksClient

logger = get_logger(__name__)

NOTIFICATIONS_PATH = "/notifications/payment-events"


class NotificationKind(str, Enum):
    PAYMENT_CONFIRMED = "payment_confirmed"
    PAYMENT_FAILED = "payment_failed"
    REFUND_PROCESSING = "refund_processing"
    REFUND_COMPLETED = "refund_completed"
    REFUND_FAILED = "refund_failed"


_tasks_client = TasksClient()


def _get_tasks_client() -> TasksClient:
    """Tasks client instance (allows test injection)."""
    return _tasks_client


def notify(booking_id: int, kind: NotificationKind, *, dedupe_key: str | None = None) -> bool:
    """Fire-and-forget notification for a booking event.

    Args:
        booking_id: Booking the event is about.
        kind: Event kind understood by the notification service.
        dedupe_key: Stable key for the underlying fact (e.g. transaction id),
            so redelivered events do not notify twice.

    Returns:
        True if the task was handed off, False otherwise. Never raises.
    """
    correlation_id = get_correlation_id()
    task_id = f"notify:{kind.value}:{booking_id}:{dedupe_key or correlation_id}"

    try:
        enqueued = _get_tasks_client().enqueue_http(
            task_id=task_id,
            url_path=NOTIFICATIONS_PATH,
            payload={"booking_id": booking_id, "event": kind.value},
            correlation_id=correlation_id,
            base_url=os.environ.get("NOTIFICATIONS_BASE_URL") or None,
        )
    except Exception:
        logger.exception(
            "notification enqueue failed",
            extra={
                "extra_fields": safe_log_context(
                    correlationId=correlation_id,
                    booking_id=booking_id,
                    kind=kind.value,
                )
            },
        )
        return False

    logger.info(
        "notification enqueued" if enqueued else "notification skipped",
        extra={
            "extra_fields": safe_log_context(
                correlationId=correlation_id,
                booking_id=booking_id,
                kind=kind.value,
            )
        },
    )
    return enqueued
