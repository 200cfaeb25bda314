from fastapi import APIRouter

from tracksync.services.health import sync_health

router = APIRouter()


@router.get("/health")
async def health():
    return {"status": "ok"}


@router.get("/health/sync")
async def health_sync(alert_threshold_hours: int | None = None):
    """Carrier sync health: activity, stale shipments and failure rate."""
    return sync_health(alert_threshold_hours=alert_threshold_hours).model_dump(mode="json", by_alias=True)
