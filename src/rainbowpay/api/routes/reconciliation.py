"""On-demand reconciliation (admin)."""

from __future__ import annotations

from fastapi import APIRouter, Depends
from pydantic import BaseModel, ConfigDict

from rainbowpay.api.auth import CurrentUser
from rainbowpay.api.errors import to_http_exception
from rainbowpay.api.rbac import require_role
from rainbowpay.domain.errors import PaymentEngineError
from rainbowpay.domain.reconciliation import reconcile
from rainbowpay.observability.correlation import get_correlation_id
from rainbowpay.observability.logging import get_logger
from rainbowpay.observability.redaction import safe_log_context

router = APIRouter(prefix="/reconciliation", tags=["reconciliation"])

logger = get_logger(__name__)


class ReconcileRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    booking_id: int | None = None
    dry_run: bool = True


@router.post("")
def run_reconciliation(
    body: ReconcileRequest,
    user: CurrentUser = Depends(require_role("admin")),
) -> dict:
    """Report (and with dry_run=false, repair) payment status drift."""
    logger.info(
        "reconciliation requested",
        extra={
            "extra_fields": safe_log_context(
                correlationId=get_correlation_id(),
                user_id=user.id,
                booking_id=body.booking_id,
                dry_run=body.dry_run,
            )
        },
    )
    try:
        report = reconcile(body.booking_id, dry_run=body.dry_run)
    except PaymentEngineError as e:
        raise to_http_exception(e)
    return report.as_dict()
