import logging
from datetime import datetime

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field
from pydantic.alias_generators import to_camel

from tracksync.auth import verify_webhook
from tracksync.models.shipment import Carrier, EventType, ShipmentStatus, TrackingEvent
from tracksync.services.carriers.base import normalize_tracking_number
from tracksync.services.reconciler import ReconciliationError, reconcile
from tracksync.storage import database

logger = logging.getLogger(__name__)

router = APIRouter()


class WebhookEvent(BaseModel):
    event_type: EventType = "location_update"
    status: ShipmentStatus | None = None
    description: str
    location: str | None = None
    event_time: datetime
    carrier_event_id: str | None = None

    model_config = {"alias_generator": to_camel, "populate_by_name": True}


class TrackingWebhookPayload(BaseModel):
    tracking_number: str
    carrier: Carrier | None = None
    events: list[WebhookEvent] = Field(default_factory=list)

    model_config = {"alias_generator": to_camel, "populate_by_name": True}


@router.post("/tracking")
async def receive_tracking_update(payload: TrackingWebhookPayload, _: None = Depends(verify_webhook)):
    """Receive tracking events pushed by a carrier."""
    shipment = database.find_shipment_by_tracking_number(normalize_tracking_number(payload.tracking_number))
    if shipment is None:
        # Acknowledge anyway so the sender does not keep retrying
        logger.warning(f"No shipment found for tracking number {payload.tracking_number}")
        return {"received": True, "matched": False}

    events = [
        TrackingEvent(**event.model_dump(), source="webhook", metadata={"webhook": True})
        for event in payload.events
    ]
    logger.info(f"Processing webhook for shipment {shipment.id} ({len(events)} events)")

    try:
        outcome = reconcile(shipment, events, source="webhook", source_id=payload.carrier or shipment.carrier)
    except ReconciliationError as e:
        logger.error(f"Webhook processing failed for shipment {shipment.id}: {e}")
        raise HTTPException(status_code=500, detail="Failed to store tracking events")

    return {
        "received": True,
        "matched": True,
        "shipmentId": shipment.id,
        "eventsAdded": outcome.events_added,
        "statusUpdated": outcome.status_updated,
        "rejectedTransition": outcome.rejected_transition,
    }
