"""Worker route for the scheduled reconciliation sweep."""

from __future__ import annotations

from fastapi import APIRouter, Request, Response
from fastapi.responses import JSONResponse

from rainbowpay.api.task_auth import verify_task_auth
from rainbowpay.domain.reconciliation import reconcile
from rainbowpay.observability.correlation import get_correlation_id
from rainbowpay.observability.logging import get_logger
from rainbowpay.observability.redaction import safe_log_context

router = APIRouter(prefix="/tasks/reconciliation", tags=["tasks"])

logger = get_logger(__name__)


@router.post("/sweep")
def sweep(request: Request) -> Response:
    """Repair every drifted booking (apply mode).

    Per-booking conflicts and failures are in the report; a 500 is only
    returned when the diff itself could not be read, so the scheduler retries.
    """
    correlation_id = get_correlation_id()

    if not verify_task_auth(request):
        return Response(status_code=401, content="unauthorized")

    try:
        report = reconcile(dry_run=False)
    except Exception:
        logger.exception(
            "reconciliation sweep failed",
            extra={"extra_fields": safe_log_context(correlationId=correlation_id)},
        )
        return Response(status_code=500, content="sweep failed")

    logger.info(
        "reconciliation sweep finished",
        extra={
            "extra_fields": safe_log_context(
                correlationId=correlation_id,
                drift=report.drift_count,
                repaired=len(report.mutated_booking_ids),
                conflicts=len(report.conflicts),
                failed=len(report.failed_booking_ids),
            )
        },
    )
    return JSONResponse(status_code=200, content=report.as_dict())
