"""Booking payment endpoints: checkout, payment view and offline settlement."""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Path
from pydantic import BaseModel, ConfigDict, Field

from rainbowpay.api.auth import CurrentUser, get_current_user
from rainbowpay.api.errors import to_http_exception, to_jsonable
from rainbowpay.api.rbac import require_role
from rainbowpay.domain.errors import PaymentEngineError
from rainbowpay.domain.fees import SplitMode
from rainbowpay.domain.ledger import settle_offline_payment
from rainbowpay.domain.payments import get_booking_payments, initiate_payment

router = APIRouter(prefix="/payments", tags=["payments"])


class CheckoutRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    payment_method: str


class OfflineSettlementRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    confirmed: bool
    reason: str | None = Field(default=None, max_length=2000)


@router.post("/bookings/{booking_id}/checkout", status_code=201)
def checkout(
    body: CheckoutRequest,
    booking_id: int = Path(..., description="Booking id"),
    user: CurrentUser = Depends(get_current_user),
) -> dict:
    """Open a payment attempt for the caller's booking."""
    try:
        result = initiate_payment(
            booking_id,
            body.payment_method,
            split_mode=SplitMode.from_env(),
            owner_id=user.id,
        )
    except PaymentEngineError as e:
        raise to_http_exception(e)
    return result.as_dict()


@router.get("/bookings/{booking_id}")
def booking_payments(
    booking_id: int = Path(..., description="Booking id"),
    user: CurrentUser = Depends(get_current_user),
) -> dict:
    try:
        view = get_booking_payments(booking_id)
    except PaymentEngineError as e:
        raise to_http_exception(e)

    if not user.is_staff and view["user_id"] != user.id:
        raise HTTPException(
            status_code=403,
            detail={"code": "NOT_BOOKING_OWNER", "message": "Booking does not belong to the current user"},
        )
    return to_jsonable(view)


@router.post("/transactions/{transaction_id}/actions/settle-offline")
def settle_offline(
    body: OfflineSettlementRequest,
    transaction_id: int = Path(..., description="Payment transaction id"),
    user: CurrentUser = Depends(require_role("staff")),
) -> dict:
    """Confirm or reject a cash / QR payment the provider received (or did not)."""
    try:
        result = settle_offline_payment(
            transaction_id,
            confirmed=body.confirmed,
            actor_id=user.id,
            reason=body.reason,
        )
    except PaymentEngineError as e:
        raise to_http_exception(e)
    return {
        "transaction_id": result.transaction_id,
        "booking_id": result.booking_id,
        "previous_status": result.previous_status,
        "status": result.status,
    }
