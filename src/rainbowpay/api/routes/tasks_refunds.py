"""Worker route releasing parked automatic refunds and resubmitting unconfirmed ones."""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Request, Response
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse

from rainbowpay.api.task_auth import verify_task_auth
from rainbowpay.domain.refunds import retry_queued_automatic_refunds
from rainbowpay.observability.correlation import get_correlation_id
from rainbowpay.observability.logging import get_logger
from rainbowpay.observability.redaction import safe_log_context

router = APIRouter(prefix="/tasks/refunds", tags=["tasks"])

logger = get_logger(__name__)

DEFAULT_BATCH = 100
MAX_BATCH = 500


def _parse_limit(payload: Any) -> int:
    """Batch size from the task payload, capped at MAX_BATCH.

    Raises:
        ValueError: limit is not a positive integer.
    """
    if not isinstance(payload, dict):
        raise ValueError("payload must be an object")
    value = payload.get("limit", DEFAULT_BATCH)
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValueError("limit must be an integer")
    if value < 1:
        raise ValueError("limit must be positive")
    return min(value, MAX_BATCH)


@router.post("/release-queued")
async def release_queued(request: Request) -> Response:
    """Retry queued automatic refunds.

    Optional payload: {"limit": int}, 1..MAX_BATCH (larger values are capped).
    """
    correlation_id = get_correlation_id()

    if not verify_task_auth(request):
        return Response(status_code=401, content="unauthorized")

    limit = DEFAULT_BATCH
    raw = await request.body()
    if raw:
        try:
            limit = _parse_limit(await request.json())
        except ValueError:
            logger.warning(
                "invalid task payload",
                extra={"extra_fields": safe_log_context(correlationId=correlation_id)},
            )
            return Response(status_code=400, content="invalid payload")

    try:
        sweep = await run_in_threadpool(retry_queued_automatic_refunds, limit=limit)
    except Exception:
        logger.exception(
            "queued refund release failed",
            extra={"extra_fields": safe_log_context(correlationId=correlation_id)},
        )
        return Response(status_code=500, content="release failed")

    return JSONResponse(status_code=200, content=sweep.as_dict())
