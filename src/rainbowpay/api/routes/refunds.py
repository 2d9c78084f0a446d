"""Refund endpoints.

Customers request and read refunds for their own bookings; staff drive the
lifecycle; receipt verification is admin only.
"""

from __future__ import annotations

from decimal import Decimal

from fastapi import APIRouter, Depends, File, HTTPException, Path, Query, Request, UploadFile
from pydantic import BaseModel, ConfigDict, Field

from rainbowpay.api.auth import CurrentUser, get_current_user
from rainbowpay.api.errors import to_http_exception, to_jsonable
from rainbowpay.api.rbac import require_role
from rainbowpay.domain import refunds
from rainbowpay.domain.errors import PaymentEngineError
from rainbowpay.domain.refunds import Actor, ActorType, RefundType
from rainbowpay.observability.correlation import get_correlation_id
from rainbowpay.observability.logging import get_logger
from rainbowpay.observability.redaction import safe_log_context

router = APIRouter(prefix="/refunds", tags=["refunds"])

logger = get_logger(__name__)


class CreateRefundRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    booking_id: int
    reason: str
    notes: str | None = Field(default=None, max_length=2000)
    amount: Decimal | None = None


class ReasonRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    reason: str = Field(min_length=1, max_length=2000)


class VerifyReceiptRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    approved: bool
    rejection_reason: str | None = Field(default=None, max_length=2000)
    complete: bool = True


class CompleteRefundRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    gateway_refund_id: str | None = None


def _actor(user: CurrentUser, request: Request) -> Actor:
    return Actor(
        id=user.id,
        type=ActorType(user.role),
        ip_address=request.client.host if request.client else None,
    )


def _refund_body(refund: dict) -> dict:
    body = to_jsonable(refund)
    if refund["refund_type"] == RefundType.MANUAL.value and refund["status"] in ("pending", "processing"):
        body["instructions"] = refunds.manual_refund_instructions(
            refund["payment_method"], refund["amount"]
        )
    return body


@router.post("", status_code=201)
def create_refund(
    body: CreateRefundRequest,
    request: Request,
    user: CurrentUser = Depends(get_current_user),
) -> dict:
    """Request a refund for a booking.

    Customers refund the full refundable amount of their own booking. Staff
    may refund any booking and choose a partial amount.
    """
    ip_address = request.client.host if request.client else None
    try:
        if user.is_staff:
            refund = refunds.create_refund_record(
                body.booking_id,
                reason=body.reason,
                actor=_actor(user, request),
                amount=body.amount,
                notes=body.notes,
            )
            result = refunds.RefundRequestResult(
                refund=refund,
                instructions=(
                    refunds.manual_refund_instructions(refund["payment_method"], refund["amount"])
                    if refund["refund_type"] == RefundType.MANUAL.value
                    else []
                ),
            )
        else:
            if body.amount is not None:
                raise HTTPException(
                    status_code=403,
                    detail={"code": "AMOUNT_NOT_ALLOWED", "message": "Only staff may set a refund amount"},
                )
            result = refunds.request_refund(
                body.booking_id,
                user_id=user.id,
                reason=body.reason,
                notes=body.notes,
                ip_address=ip_address,
            )
    except PaymentEngineError as e:
        logger.info(
            "refund request rejected",
            extra={
                "extra_fields": safe_log_context(
                    correlationId=get_correlation_id(),
                    booking_id=body.booking_id,
                    code=e.code,
                )
            },
        )
        raise to_http_exception(e)

    return result.as_dict()


@router.get("")
def list_refunds(
    booking_id: int = Query(..., description="Booking id"),
    user: CurrentUser = Depends(get_current_user),
) -> list[dict]:
    try:
        rows = refunds.list_refunds_for_booking(
            booking_id, owner_id=None if user.is_staff else user.id
        )
    except PaymentEngineError as e:
        raise to_http_exception(e)
    return [to_jsonable(row) for row in rows]


@router.get("/eligibility")
def refund_eligibility(
    booking_id: int = Query(..., description="Booking id"),
    user: CurrentUser = Depends(get_current_user),
) -> dict:
    try:
        result = refunds.check_refund_eligibility(
            booking_id, owner_id=None if user.is_staff else user.id
        )
    except PaymentEngineError as e:
        raise to_http_exception(e)
    return result.as_dict()


@router.get("/{refund_id}")
def get_refund(
    refund_id: int = Path(..., description="Refund id"),
    user: CurrentUser = Depends(get_current_user),
) -> dict:
    """Refund detail. The audit trail is included for staff only."""
    try:
        refund = refunds.get_refund(refund_id)
    except PaymentEngineError as e:
        raise to_http_exception(e)

    if not user.is_staff and refund["user_id"] != user.id:
        raise HTTPException(
            status_code=403,
            detail={"code": "NOT_BOOKING_OWNER", "message": "Refund does not belong to the current user"},
        )

    body = _refund_body(refund)
    if user.is_staff:
        body["audit_trail"] = [to_jsonable(row) for row in refunds.get_audit_trail(refund_id)]
    return body


# ── Staff actions ────────────────────────────────────────


@router.post("/{refund_id}/actions/approve")
def approve_refund(
    request: Request,
    refund_id: int = Path(..., description="Refund id"),
    user: CurrentUser = Depends(require_role("staff")),
) -> dict:
    """Start processing a pending refund (gateway call for automatic refunds)."""
    try:
        refund = refunds.approve_refund(refund_id, actor=_actor(user, request))
    except PaymentEngineError as e:
        raise to_http_exception(e)
    return _refund_body(refund)


@router.post("/{refund_id}/actions/cancel")
def cancel_refund(
    body: ReasonRequest,
    request: Request,
    refund_id: int = Path(..., description="Refund id"),
    user: CurrentUser = Depends(require_role("staff")),
) -> dict:
    try:
        refund = refunds.cancel_refund(refund_id, actor=_actor(user, request), reason=body.reason)
    except PaymentEngineError as e:
        raise to_http_exception(e)
    return _refund_body(refund)


@router.post("/{refund_id}/actions/fail")
def fail_refund(
    body: ReasonRequest,
    request: Request,
    refund_id: int = Path(..., description="Refund id"),
    user: CurrentUser = Depends(require_role("staff")),
) -> dict:
    try:
        refund = refunds.fail_refund(refund_id, actor=_actor(user, request), reason=body.reason)
    except PaymentEngineError as e:
        raise to_http_exception(e)
    return _refund_body(refund)


@router.post("/{refund_id}/receipt")
def upload_receipt(
    request: Request,
    refund_id: int = Path(..., description="Refund id"),
    receipt: UploadFile = File(...),
    user: CurrentUser = Depends(require_role("staff")),
) -> dict:
    """Attach a manual refund receipt (JPEG, PNG or PDF up to 10 MB)."""
    # read one byte past the limit so oversized files are still rejected
    data = receipt.file.read(refunds.MAX_RECEIPT_BYTES + 1)
    try:
        refund = refunds.upload_refund_receipt(
            refund_id,
            data=data,
            content_type=receipt.content_type,
            actor=_actor(user, request),
        )
    except PaymentEngineError as e:
        raise to_http_exception(e)
    return {
        "refund_id": refund["id"],
        "status": refund["status"],
        "receipt_path": refund["receipt_path"],
    }


@router.post("/{refund_id}/actions/verify-receipt")
def verify_receipt(
    body: VerifyReceiptRequest,
    request: Request,
    refund_id: int = Path(..., description="Refund id"),
    user: CurrentUser = Depends(require_role("admin")),
) -> dict:
    try:
        refund = refunds.verify_refund_receipt(
            refund_id,
            approved=body.approved,
            actor=_actor(user, request),
            rejection_reason=body.rejection_reason,
            complete=body.complete,
        )
    except PaymentEngineError as e:
        raise to_http_exception(e)
    return _refund_body(refund)


@router.post("/{refund_id}/actions/complete")
def complete_refund(
    body: CompleteRefundRequest,
    request: Request,
    refund_id: int = Path(..., description="Refund id"),
    user: CurrentUser = Depends(require_role("staff")),
) -> dict:
    try:
        refund = refunds.complete_refund(
            refund_id,
            actor=_actor(user, request),
            gateway_refund_id=body.gateway_refund_id,
        )
    except PaymentEngineError as e:
        raise to_http_exception(e)
    return _refund_body(refund)
