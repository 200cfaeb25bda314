import logging

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse

from tracksync.auth import verify_auth, verify_cron
from tracksync.models.sync import SyncSummary
from tracksync.services.sync import SyncError, SyncOrchestrator

logger = logging.getLogger(__name__)

router = APIRouter()


def get_orchestrator(request: Request) -> SyncOrchestrator:
    return request.app.state.orchestrator


def summary_response(summary: SyncSummary, empty_message: str = "No shipments need syncing") -> dict:
    message = summary.message() if summary.total_shipments else empty_message
    return {"message": message, "result": summary.model_dump(mode="json", by_alias=True)}


def failure_response(error: SyncError, what: str) -> JSONResponse:
    logger.error(f"{what} error: {error}")
    return JSONResponse(
        status_code=500,
        content={"error": f"Failed to perform {what.lower()}", "details": str(error)},
    )


@router.post("/cron")
async def run_scheduled_sync(
    _: None = Depends(verify_cron),
    orchestrator: SyncOrchestrator = Depends(get_orchestrator),
):
    """Sync every shipment that is due. Meant for external cron triggers."""
    try:
        summary = await orchestrator.sync_due_shipments()
    except SyncError as e:
        return failure_response(e, "Periodic sync")
    return summary_response(summary)


@router.post("/all")
async def run_full_resync(
    _: None = Depends(verify_auth),
    orchestrator: SyncOrchestrator = Depends(get_orchestrator),
):
    """Resync all active shipments regardless of when they were last synced."""
    try:
        summary = await orchestrator.sync_active_shipments()
    except SyncError as e:
        return failure_response(e, "Bulk sync")
    return summary_response(summary, "No active shipments found to sync")


@router.get("/stats")
async def sync_stats(
    _: None = Depends(verify_auth),
    orchestrator: SyncOrchestrator = Depends(get_orchestrator),
):
    """Per-carrier rate limiter state and call configuration."""
    return orchestrator.api.get_service_stats()
