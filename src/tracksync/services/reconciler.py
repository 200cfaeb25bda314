"""
Merge freshly fetched carrier events into a shipment's stored history.

Identity is the carrier event time: a fetched event whose event_time is
already stored for the same shipment and source, or was already taken
earlier in the same batch, is dropped. When both events carry a
carrier_event_id and the ids differ, the fetched event is kept. Without
ids, two distinct events sharing a timestamp collide and only the first
one survives.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone

from tracksync.models.shipment import EventSource, Shipment, TrackingEvent
from tracksync.services import status_machine
from tracksync.storage import database

logger = logging.getLogger(__name__)


class ReconciliationError(Exception):
    """Stored history could not be read or a new event could not be saved."""

    def __init__(self, message: str, events_added: int = 0):
        super().__init__(message)
        self.events_added = events_added


@dataclass
class ReconcileOutcome:
    events_added: int = 0
    status_updated: bool = False
    new_status: str | None = None
    rejected_transition: str | None = None
    status_error: str | None = None


def select_new_events(existing: list[TrackingEvent], fetched: list[TrackingEvent]) -> list[TrackingEvent]:
    """Drop fetched events already stored, return the rest oldest first."""
    known: dict[int, set[str | None]] = {}
    for event in existing:
        known.setdefault(event.timestamp_ms(), set()).add(event.carrier_event_id)

    new_events = []
    for event in fetched:
        timestamp = event.timestamp_ms()
        ids = known.get(timestamp)
        if ids is None or (event.carrier_event_id and None not in ids and event.carrier_event_id not in ids):
            new_events.append(event)
            # Later events in the same batch are matched against this one too
            known.setdefault(timestamp, set()).add(event.carrier_event_id)

    return sorted(new_events, key=lambda event: event.timestamp_ms())


def reconcile(
    shipment: Shipment,
    fetched: list[TrackingEvent],
    source: EventSource = "api_sync",
    source_id: str | None = None,
) -> ReconcileOutcome:
    """Persist new events and move the shipment to the latest event's status.

    Events are saved before any status change is attempted, so a rejected
    or failed status update never loses them.
    """
    outcome = ReconcileOutcome()
    if not fetched:
        return outcome

    try:
        existing = database.load_events(shipment.id, source=source)
    except Exception as e:
        raise ReconciliationError(f"Could not load stored events: {e}") from e

    new_events = select_new_events(existing, fetched)
    recorded_at = datetime.now(timezone.utc)

    for event in new_events:
        stored = event.model_copy(
            update={
                "shipment_id": shipment.id,
                "source": source,
                "source_id": source_id,
                "recorded_at": recorded_at,
                "metadata": {**event.metadata, "syncSource": source_id},
            }
        )
        try:
            database.insert_event(stored)
        except Exception as e:
            raise ReconciliationError(
                f"Could not save tracking event: {e}", events_added=outcome.events_added
            ) from e
        outcome.events_added += 1

    if not new_events:
        return outcome

    latest = new_events[-1]
    if latest.status and latest.status != shipment.status:
        try:
            status_machine.apply_transition(shipment, latest.status, latest.event_time)
            outcome.status_updated = True
            outcome.new_status = latest.status
            if latest.status == "delivered":
                logger.info(f"Shipment {shipment.id} delivered - will stop periodic syncing")
        except status_machine.InvalidStatusTransition as e:
            logger.warning(f"Status anomaly for shipment {shipment.id}, hint not applied: {e}")
            outcome.rejected_transition = str(e)
        except Exception as e:
            logger.exception(f"Could not update status for shipment {shipment.id}: {e}")
            outcome.status_error = str(e)

    return outcome
