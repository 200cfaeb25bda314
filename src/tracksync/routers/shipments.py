from datetime import datetime, timezone

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel
from pydantic.alias_generators import to_camel

from tracksync.auth import verify_auth
from tracksync.models.shipment import Carrier, Shipment, ShipmentStatus, TrackingEvent
from tracksync.routers.sync import get_orchestrator, summary_response
from tracksync.services import status_machine
from tracksync.services.backoff import next_retry_after
from tracksync.services.carriers.factory import adapter_factory
from tracksync.services.sync import SyncOrchestrator
from tracksync.storage import database

router = APIRouter(dependencies=[Depends(verify_auth)])

STATUS_EVENT_TYPES: dict[str, str] = {
    "pending": "location_update",
    "in-transit": "in_transit",
    "out-for-delivery": "out_for_delivery",
    "delivered": "delivered",
    "exception": "exception",
    "cancelled": "cancelled",
}


class RequestModel(BaseModel):
    model_config = {"alias_generator": to_camel, "populate_by_name": True}


class ShipmentCreate(RequestModel):
    carrier: Carrier | None = None
    carrier_tracking_number: str | None = None
    description: str = ""


class TrackingAssignment(RequestModel):
    carrier: Carrier
    carrier_tracking_number: str


class StatusUpdate(RequestModel):
    status: ShipmentStatus
    note: str | None = None
    location: str | None = None


def _get_or_404(shipment_id: str) -> Shipment:
    shipment = database.load("shipments", shipment_id, Shipment)
    if shipment is None:
        raise HTTPException(status_code=404, detail="Shipment not found")
    return shipment


def _check_tracking_number(carrier: str, tracking_number: str, shipment_id: str | None = None) -> str:
    if not adapter_factory.validate_tracking_number(tracking_number, carrier):
        raise HTTPException(status_code=422, detail=f"Invalid {carrier} tracking number format")
    tracking_number = adapter_factory.get_adapter(carrier).normalize_tracking_number(tracking_number)

    existing = database.find_shipment_by_tracking_number(tracking_number)
    if existing and existing.id != shipment_id:
        raise HTTPException(
            status_code=409,
            detail=f"Tracking number already assigned to shipment {existing.id}",
        )
    return tracking_number


def _serialize(shipment: Shipment) -> dict:
    data = shipment.model_dump(mode="json", by_alias=True)
    retry_at = next_retry_after(shipment)
    data["trackingLink"] = shipment.tracking_link()
    data["nextRetryAfter"] = retry_at.isoformat() if retry_at else None
    return data


@router.get("")
async def list_shipments(needs_review: bool | None = None, status: ShipmentStatus | None = None):
    """List shipments, optionally only those flagged for review or in one status."""
    shipments = database.load_all("shipments", Shipment)
    if needs_review is not None:
        shipments = [s for s in shipments if s.needs_review == needs_review]
    if status is not None:
        shipments = [s for s in shipments if s.status == status]
    return [_serialize(s) for s in shipments]


@router.post("", status_code=201)
async def add_shipment(payload: ShipmentCreate):
    """Manually add a shipment."""
    tracking_number = payload.carrier_tracking_number
    if tracking_number:
        if not payload.carrier:
            raise HTTPException(status_code=400, detail="A carrier is required with a tracking number")
        tracking_number = _check_tracking_number(payload.carrier, tracking_number)

    shipment = Shipment(
        carrier=payload.carrier,
        carrier_tracking_number=tracking_number,
        description=payload.description.strip(),
    )
    database.save("shipments", shipment)
    return _serialize(shipment)


@router.get("/{shipment_id}")
async def get_shipment(shipment_id: str):
    return _serialize(_get_or_404(shipment_id))


@router.delete("/{shipment_id}")
async def delete_shipment(shipment_id: str):
    """Delete a shipment and its events."""
    if not database.delete("shipments", shipment_id):
        raise HTTPException(status_code=404, detail="Shipment not found")
    return {"deleted": shipment_id}


@router.get("/{shipment_id}/events")
async def list_events(shipment_id: str, source: str | None = None):
    _get_or_404(shipment_id)
    events = database.load_events(shipment_id, source=source)
    return [event.model_dump(mode="json", by_alias=True) for event in events]


@router.put("/{shipment_id}/tracking")
async def assign_tracking(shipment_id: str, payload: TrackingAssignment):
    """Assign a carrier tracking number. The shipment becomes due for sync right away."""
    shipment = _get_or_404(shipment_id)
    tracking_number = _check_tracking_number(payload.carrier, payload.carrier_tracking_number, shipment.id)

    shipment.carrier = payload.carrier
    shipment.carrier_tracking_number = tracking_number
    shipment.api_sync_status = "pending"
    shipment.api_error = None
    shipment.last_api_sync = None
    shipment.failing_since = None
    shipment.needs_review = False
    database.update_sync_fields(shipment)
    return _serialize(shipment)


@router.post("/{shipment_id}/status")
async def update_status(shipment_id: str, payload: StatusUpdate):
    """Change a shipment's status by hand."""
    shipment = _get_or_404(shipment_id)
    previous = shipment.status
    now = datetime.now(timezone.utc)

    try:
        status_machine.apply_transition(shipment, payload.status, now)
    except status_machine.InvalidStatusTransition as e:
        raise HTTPException(status_code=409, detail=str(e))

    database.insert_event(
        TrackingEvent(
            shipment_id=shipment.id,
            event_type=STATUS_EVENT_TYPES[payload.status],
            status=payload.status,
            description=payload.note or f"Status changed from {previous} to {payload.status}",
            location=payload.location,
            source="manual",
            event_time=now,
        )
    )
    return _serialize(shipment)


@router.post("/{shipment_id}/sync")
async def sync_shipment(shipment_id: str, orchestrator: SyncOrchestrator = Depends(get_orchestrator)):
    """Sync one shipment now, ignoring its backoff window."""
    shipment = _get_or_404(shipment_id)
    if not shipment.carrier or not shipment.carrier_tracking_number:
        raise HTTPException(
            status_code=400,
            detail="Shipment missing required data for sync: both carrier and carrierTrackingNumber are required",
        )

    summary = await orchestrator.sync_shipment(shipment)
    return summary_response(summary)
