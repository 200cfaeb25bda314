import logging

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from tracksync.config import settings
from tracksync.services.sync import SyncOrchestrator

logger = logging.getLogger(__name__)

scheduler = AsyncIOScheduler()


async def tracking_sync_job(orchestrator: SyncOrchestrator):
    """Job to sync carrier tracking for every shipment that is due."""
    logger.info("Starting periodic sync job for active shipments")
    try:
        summary = await orchestrator.sync_due_shipments()
        logger.info(f"Tracking sync complete: {summary.message()}")
    except Exception as e:
        logger.error(f"Tracking sync failed: {e}")


def start_scheduler(orchestrator: SyncOrchestrator):
    """Start the background scheduler."""
    scheduler.add_job(
        tracking_sync_job,
        trigger=IntervalTrigger(minutes=settings.sync_interval_minutes),
        args=[orchestrator],
        id="tracking_sync",
        name="Sync shipment tracking from carrier APIs",
        replace_existing=True,
        max_instances=1,
        coalesce=True,
    )
    scheduler.start()
    logger.info(f"Scheduler started, syncing every {settings.sync_interval_minutes} minutes")


def shutdown_scheduler():
    """Shutdown the scheduler."""
    if scheduler.running:
        scheduler.shutdown(wait=False)
        logger.info("Scheduler shutdown")
