"""
Carrier tracking sync passes.

A pass walks a list of shipments one at a time: skip what cannot or should
not be synced, fetch events through the rate-limited carrier client, record
the outcome on the shipment, reconcile new events, append an api_sync audit
event, then wait the carrier's pacing delay. Each shipment's outcome is
caught and recorded on its own; nothing a single shipment does can abort
the pass.
"""

import asyncio
import logging
from datetime import datetime, timedelta, timezone

from tracksync.config import settings
from tracksync.models.shipment import Shipment, TrackingEvent, as_utc
from tracksync.models.sync import SyncResult, SyncSummary, SyncTrigger
from tracksync.services.backoff import in_backoff, next_retry_after
from tracksync.services.carrier_api import CarrierAPIService
from tracksync.services.carriers.base import CarrierAPIError
from tracksync.services.rate_limiter import (
    DEFAULT_ON_DEMAND_DELAY,
    DEFAULT_SCHEDULED_DELAY,
    ON_DEMAND_DELAYS,
    SCHEDULED_DELAYS,
    carrier_delay,
)
from tracksync.services.reconciler import ReconcileOutcome, ReconciliationError, reconcile
from tracksync.storage import database

logger = logging.getLogger(__name__)

SOURCE_IDS: dict[str, str] = {
    "scheduled": "cron-job",
    "on_demand": "bulk-sync",
    "manual": "manual-sync",
}

SYNC_LABELS: dict[str, str] = {
    "scheduled": "Periodic",
    "on_demand": "Bulk",
    "manual": "Manual",
}


class SyncError(Exception):
    """A sync pass could not start."""


def is_due(shipment: Shipment, now: datetime, stale_after: timedelta | None = None) -> bool:
    """Whether a scheduled pass should pick up this shipment."""
    if not shipment.is_eligible:
        return False
    if shipment.last_api_sync is None:
        return True

    stale_after = stale_after or timedelta(minutes=settings.stale_after_minutes)
    if shipment.api_sync_status == "success":
        return as_utc(now) - as_utc(shipment.last_api_sync) > stale_after
    if shipment.api_sync_status == "failed":
        return not in_backoff(shipment, now)
    return False


def select_due_shipments(now: datetime) -> list[Shipment]:
    return [s for s in database.load_all("shipments", Shipment) if is_due(s, now)]


def select_active_shipments() -> list[Shipment]:
    return [s for s in database.load_all("shipments", Shipment) if s.is_eligible]


class SyncOrchestrator:
    def __init__(
        self,
        api_service: CarrierAPIService | None = None,
        delays: dict[str, float] | None = None,
        parallel_carriers: bool | None = None,
    ):
        self.api = api_service or CarrierAPIService()
        self.delays = delays
        self.parallel_carriers = settings.parallel_carriers if parallel_carriers is None else parallel_carriers

    def delay_for(self, carrier: str | None, trigger: SyncTrigger) -> float:
        if self.delays is not None:
            return carrier_delay(carrier, self.delays, 0.0)
        if trigger == "scheduled":
            return carrier_delay(carrier, SCHEDULED_DELAYS, DEFAULT_SCHEDULED_DELAY)
        return carrier_delay(carrier, ON_DEMAND_DELAYS, DEFAULT_ON_DEMAND_DELAY)

    async def sync_due_shipments(self, now: datetime | None = None) -> SyncSummary:
        """Scheduled pass over every shipment that is due."""
        now = now or datetime.now(timezone.utc)
        try:
            shipments = select_due_shipments(now)
        except Exception as e:
            raise SyncError(f"Could not load shipments due for sync: {e}") from e

        if not shipments:
            logger.info("No shipments need syncing at this time")
        else:
            logger.info(f"Found {len(shipments)} shipments that need syncing")
        return await self.run(shipments, trigger="scheduled")

    async def sync_active_shipments(self) -> SyncSummary:
        """Full resync of every eligible shipment, ignoring staleness."""
        try:
            shipments = select_active_shipments()
        except Exception as e:
            raise SyncError(f"Could not load active shipments: {e}") from e

        logger.info(f"Found {len(shipments)} active shipments to sync")
        return await self.run(shipments, trigger="on_demand")

    async def sync_shipment(self, shipment: Shipment) -> SyncSummary:
        """Operator-triggered sync of one shipment. Bypasses backoff."""
        logger.info(f"Manual sync triggered for shipment {shipment.id}")
        return await self.run([shipment], trigger="manual", respect_backoff=False)

    async def run(
        self,
        shipments: list[Shipment],
        trigger: SyncTrigger = "scheduled",
        respect_backoff: bool = True,
    ) -> SyncSummary:
        summary = SyncSummary(
            trigger=trigger,
            total_shipments=len(shipments),
            started_at=datetime.now(timezone.utc),
        )
        indexed = list(enumerate(shipments))

        if self.parallel_carriers:
            groups: dict[str | None, list[tuple[int, Shipment]]] = {}
            for item in indexed:
                groups.setdefault(item[1].carrier, []).append(item)
            batches = await asyncio.gather(
                *(self._run_sequence(group, trigger, respect_backoff) for group in groups.values())
            )
            outcomes = sorted((pair for batch in batches for pair in batch), key=lambda pair: pair[0])
        else:
            outcomes = await self._run_sequence(indexed, trigger, respect_backoff)

        for _, result in outcomes:
            summary.add(result)

        summary.finish(datetime.now(timezone.utc))
        logger.info(
            f"{SYNC_LABELS[trigger]} sync completed: {summary.successful} successful, "
            f"{summary.failed} failed, {summary.skipped} skipped out of {summary.total_shipments} total"
        )
        return summary

    async def _run_sequence(
        self,
        items: list[tuple[int, Shipment]],
        trigger: SyncTrigger,
        respect_backoff: bool,
    ) -> list[tuple[int, SyncResult]]:
        outcomes = []
        for position, (index, shipment) in enumerate(items):
            logger.info(f"Syncing shipment {position + 1}/{len(items)}: {shipment.id}")
            result = await self._sync_one(shipment, trigger, respect_backoff)
            outcomes.append((index, result))

            if position < len(items) - 1 and not result.skipped:
                delay = self.delay_for(shipment.carrier, trigger)
                if delay > 0:
                    logger.debug(f"Rate limiting: waiting {delay}s before next API call")
                    await asyncio.sleep(delay)
        return outcomes

    async def _sync_one(self, shipment: Shipment, trigger: SyncTrigger, respect_backoff: bool) -> SyncResult:
        try:
            return await self._sync_shipment(shipment, trigger, respect_backoff)
        except Exception as e:
            logger.exception(f"Unexpected error syncing shipment {shipment.id}: {e}")
            return SyncResult(
                shipment_id=shipment.id,
                success=False,
                error=str(e) or e.__class__.__name__,
                carrier=shipment.carrier,
                tracking_number=shipment.carrier_tracking_number,
            )

    async def _sync_shipment(self, shipment: Shipment, trigger: SyncTrigger, respect_backoff: bool) -> SyncResult:
        now = datetime.now(timezone.utc)

        if not shipment.carrier or not shipment.carrier_tracking_number:
            logger.warning(f"Skipping shipment {shipment.id}: missing tracking number or carrier")
            return SyncResult(
                shipment_id=shipment.id,
                success=False,
                skipped=True,
                error="Missing required data for sync",
                carrier=shipment.carrier,
                tracking_number=shipment.carrier_tracking_number,
            )

        if respect_backoff and in_backoff(shipment, now):
            logger.info(f"Skipping shipment {shipment.id}: still in backoff period")
            return SyncResult(
                shipment_id=shipment.id,
                success=False,
                skipped=True,
                error="Still in exponential backoff period",
                next_retry_after=next_retry_after(shipment),
                carrier=shipment.carrier,
                tracking_number=shipment.carrier_tracking_number,
            )

        try:
            events = await self.api.get_tracking_updates(shipment.carrier_tracking_number, shipment.carrier)
        except Exception as e:
            return self._record_failure(shipment, e, now, trigger)

        return self._record_success(shipment, events, now, trigger)

    def _record_success(
        self,
        shipment: Shipment,
        events: list[TrackingEvent],
        now: datetime,
        trigger: SyncTrigger,
    ) -> SyncResult:
        shipment.api_sync_status = "success"
        shipment.api_error = None
        shipment.needs_review = False
        shipment.failing_since = None
        shipment.last_api_sync = now

        error = None
        try:
            database.update_sync_fields(shipment)
        except Exception as e:
            logger.exception(f"Could not record sync success for shipment {shipment.id}: {e}")
            error = f"Could not record sync status: {e}"

        try:
            outcome = reconcile(shipment, events, source="api_sync", source_id=SOURCE_IDS[trigger])
        except ReconciliationError as e:
            logger.error(f"Reconciliation failed for shipment {shipment.id}: {e}")
            outcome = ReconcileOutcome(events_added=e.events_added)
            error = f"Reconciliation failed: {e}"

        description = (
            f"{SYNC_LABELS[trigger]} sync completed successfully. "
            f"{outcome.events_added} new events added."
        )
        if outcome.status_updated:
            description += " Status updated."
        self._append_audit_event(
            shipment,
            now,
            trigger,
            description,
            {
                "eventsAdded": outcome.events_added,
                "eventsFetched": len(events),
                "statusUpdated": outcome.status_updated,
                "rejectedTransition": outcome.rejected_transition,
            },
        )

        logger.info(
            f"{SYNC_LABELS[trigger]} sync completed for shipment {shipment.id}: "
            f"{outcome.events_added} new events added{', status updated' if outcome.status_updated else ''}"
        )
        return SyncResult(
            shipment_id=shipment.id,
            success=True,
            events_added=outcome.events_added,
            status_updated=outcome.status_updated,
            new_status=outcome.new_status,
            rejected_transition=outcome.rejected_transition,
            error=error or outcome.status_error,
            carrier=shipment.carrier,
            tracking_number=shipment.carrier_tracking_number,
            last_sync=now,
        )

    def _record_failure(
        self,
        shipment: Shipment,
        error: Exception,
        now: datetime,
        trigger: SyncTrigger,
    ) -> SyncResult:
        message = str(error) or error.__class__.__name__
        logger.error(f"{SYNC_LABELS[trigger]} sync failed for shipment {shipment.id}: {message}")

        invalid_number = isinstance(error, CarrierAPIError) and error.code == "INVALID_TRACKING_NUMBER"
        still_failing = shipment.api_sync_status == "failed" and shipment.failing_since is not None
        if invalid_number or not still_failing:
            # Invalid numbers fail locally and never escalate past the first tier
            shipment.failing_since = now

        shipment.api_sync_status = "failed"
        shipment.api_error = message
        shipment.needs_review = True
        shipment.last_api_sync = now
        retry_at = next_retry_after(shipment)

        try:
            database.update_sync_fields(shipment)
        except Exception as e:
            logger.exception(f"Could not record sync failure for shipment {shipment.id}: {e}")

        self._append_audit_event(
            shipment,
            now,
            trigger,
            f"{SYNC_LABELS[trigger]} sync failed: {message}",
            {
                "error": message,
                "errorCode": getattr(error, "code", None),
                "nextRetryAfter": retry_at.isoformat() if retry_at else None,
            },
        )
        return SyncResult(
            shipment_id=shipment.id,
            success=False,
            error=message,
            next_retry_after=retry_at,
            carrier=shipment.carrier,
            tracking_number=shipment.carrier_tracking_number,
            last_sync=now,
        )

    def _append_audit_event(
        self,
        shipment: Shipment,
        now: datetime,
        trigger: SyncTrigger,
        description: str,
        metadata: dict,
    ) -> None:
        event = TrackingEvent(
            shipment_id=shipment.id,
            event_type="api_sync",
            description=description,
            source="api_sync",
            source_id=SOURCE_IDS[trigger],
            event_time=now,
            metadata={
                **metadata,
                "carrier": shipment.carrier,
                "trackingNumber": shipment.carrier_tracking_number,
                "trigger": trigger,
            },
        )
        try:
            database.insert_event(event)
        except Exception as e:
            logger.exception(f"Could not record sync audit event for shipment {shipment.id}: {e}")
