"""Public-facing routes (APP_ROLE=public)."""

from fastapi import APIRouter

from rainbowpay.api.routes import payments, reconciliation, refunds, webhooks_paymongo

router = APIRouter()


@router.get("/health")
def health() -> dict:
    """Health check endpoint."""
    return {"status": "ok"}


router.include_router(webhooks_paymongo.router)
router.include_router(refunds.router)
router.include_router(payments.router)
router.include_router(reconciliation.router)
