from datetime import datetime, timezone
from typing import Any, Literal
from uuid import uuid4

from pydantic import BaseModel, Field
from pydantic.alias_generators import to_camel

Carrier = Literal["ups", "fedex", "dhl", "usps"]
ShipmentStatus = Literal["pending", "in-transit", "out-for-delivery", "delivered", "exception", "cancelled"]
ApiSyncStatus = Literal["pending", "success", "failed"]
EventType = Literal[
    "pickup",
    "in_transit",
    "out_for_delivery",
    "delivered",
    "delivery_attempt",
    "exception",
    "cancelled",
    "location_update",
    "api_sync",
]
EventSource = Literal["api_sync", "manual", "webhook"]

CARRIERS: tuple[Carrier, ...] = ("ups", "fedex", "dhl", "usps")
TERMINAL_STATUSES: frozenset[str] = frozenset({"delivered", "cancelled"})
ACTIVE_STATUSES: tuple[ShipmentStatus, ...] = ("pending", "in-transit", "out-for-delivery", "exception")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    """Treat naive datetimes as UTC and normalize aware ones to UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class TrackingEvent(BaseModel):
    id: str = Field(default_factory=lambda: f"evt_{uuid4().hex[:12]}")
    shipment_id: str | None = None
    event_type: EventType
    status: ShipmentStatus | None = None
    description: str
    location: str | None = None
    source: EventSource = "api_sync"
    source_id: str | None = None
    carrier_event_id: str | None = None
    event_time: datetime
    recorded_at: datetime = Field(default_factory=utcnow)
    metadata: dict[str, Any] = Field(default_factory=dict)

    model_config = {"alias_generator": to_camel, "populate_by_name": True}

    def timestamp_ms(self) -> int:
        """Dedup identity of the event: carrier time in epoch milliseconds."""
        return int(as_utc(self.event_time).timestamp() * 1000)


class Shipment(BaseModel):
    id: str = Field(default_factory=lambda: f"ship_{uuid4().hex[:8]}")
    carrier: Carrier | None = None
    carrier_tracking_number: str | None = None
    description: str = ""
    status: ShipmentStatus = "pending"
    api_sync_status: ApiSyncStatus = "pending"
    api_error: str | None = None
    last_api_sync: datetime | None = None
    failing_since: datetime | None = None
    needs_review: bool = False
    delivered_at: datetime | None = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    model_config = {"alias_generator": to_camel, "populate_by_name": True}

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def is_eligible(self) -> bool:
        """Has both tracking fields and is not in a terminal status."""
        return bool(self.carrier and self.carrier_tracking_number) and not self.is_terminal

    def tracking_link(self) -> str | None:
        """Get the public carrier tracking URL for this shipment."""
        number = self.carrier_tracking_number
        if not number:
            return None

        match self.carrier:
            case "ups":
                return f"https://www.ups.com/track?tracknum={number}"
            case "usps":
                return f"https://tools.usps.com/go/TrackConfirmAction?tLabels={number}"
            case "fedex":
                return f"https://www.fedex.com/fedextrack/?trknbr={number}"
            case "dhl":
                return f"https://www.dhl.com/en/express/tracking.html?AWB={number}"
            case _:
                return None
