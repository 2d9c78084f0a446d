"""PayMongo webhook endpoint.

Response contract:
- 401 signature missing/invalid (only when a secret is configured)
- 400 body unreadable, not JSON or missing data.attributes.type/data
- 500 webhook secret unset in production, or an unexpected error outside
  the per-handler boundaries
- 200 everything else, including unknown event types and handler failures

Never log the payload or the signature header.
"""

from __future__ import annotations

import os

from fastapi import APIRouter, Request, Response
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse

from rainbowpay.domain.errors import MalformedEventError
from rainbowpay.domain.webhook_dispatch import dispatch
from rainbowpay.observability.correlation import get_correlation_id
from rainbowpay.observability.logging import get_logger
from rainbowpay.observability.redaction import id_prefix, safe_log_context
from rainbowpay.paymongo.webhook import SIGNATURE_HEADER, parse_event, validate_webhook_signature

router = APIRouter(tags=["webhooks"])

logger = get_logger(__name__)


def _get_webhook_secret() -> str | None:
    """Webhook secret, or None when validation is intentionally skipped.

    Raises:
        RuntimeError: Secret unset while APP_ENV=production.
    """
    secret = os.environ.get("PAYMONGO_WEBHOOK_SECRET", "")
    if secret:
        return secret
    if os.environ.get("APP_ENV", "development") == "production":
        raise RuntimeError("PAYMONGO_WEBHOOK_SECRET not configured")
    return None


@router.post("/webhooks/paymongo")
async def paymongo_webhook(request: Request) -> Response:
    """Receive a PayMongo event, verify it and apply it before acknowledging.

    Handlers do blocking database and gateway I/O, so dispatch runs in the
    worker threadpool.
    """
    correlation_id = get_correlation_id()

    try:
        raw_body = await request.body()
    except Exception:
        logger.warning(
            "failed to read request body",
            extra={"extra_fields": safe_log_context(correlationId=correlation_id)},
        )
        return Response(status_code=400, content="invalid body")

    try:
        secret = _get_webhook_secret()
    except RuntimeError:
        logger.error(
            "webhook secret not configured",
            extra={"extra_fields": safe_log_context(correlationId=correlation_id)},
        )
        return Response(status_code=500, content="server configuration error")

    if not validate_webhook_signature(raw_body, request.headers.get(SIGNATURE_HEADER), secret):
        logger.warning(
            "paymongo signature validation failed",
            extra={"extra_fields": safe_log_context(correlationId=correlation_id)},
        )
        return Response(status_code=401, content="invalid signature")

    try:
        event = parse_event(raw_body)
    except MalformedEventError as e:
        logger.warning(
            "paymongo payload invalid",
            extra={"extra_fields": safe_log_context(correlationId=correlation_id, error=e.message)},
        )
        return Response(status_code=400, content="invalid payload")

    logger.info(
        "paymongo webhook received",
        extra={
            "extra_fields": safe_log_context(
                correlationId=correlation_id,
                event_id_prefix=id_prefix(event.event_id),
                event_type=event.event_type,
                livemode=event.data.attributes.livemode,
            )
        },
    )

    try:
        result = await run_in_threadpool(dispatch, event)
    except Exception:
        logger.exception(
            "paymongo webhook processing failed",
            extra={"extra_fields": safe_log_context(correlationId=correlation_id)},
        )
        return Response(status_code=500, content="processing failed")

    return JSONResponse(
        status_code=200,
        content={"received": True, "handled": result.handled, "outcome": result.outcome},
    )
