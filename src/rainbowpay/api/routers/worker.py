"""Worker/internal routes (APP_ROLE=worker)."""

from fastapi import APIRouter

from rainbowpay.api.routes import tasks_reconciliation, tasks_refunds

router = APIRouter()


@router.get("/tasks/health")
def tasks_health() -> dict:
    """Tasks subsystem health check."""
    return {"status": "ok", "subsystem": "tasks"}


router.include_router(tasks_reconciliation.router)
router.include_router(tasks_refunds.router)
