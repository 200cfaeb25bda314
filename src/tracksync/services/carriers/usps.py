from typing import Any

import httpx

from tracksync.models.shipment import TrackingEvent
from tracksync.services.carriers.base import CarrierAdapter, join_location, parse_timestamp

# USPS event codes -> (event type, shipment status hint)
EVENT_CODES: dict[str, tuple[str, str | None]] = {
    "GX": ("pickup", "pending"),  # label created
    "03": ("pickup", "in-transit"),  # accepted at post office
    "OA": ("pickup", "in-transit"),
    "10": ("in_transit", "in-transit"),
    "07": ("in_transit", "in-transit"),
    "NT": ("in_transit", "in-transit"),
    "OF": ("out_for_delivery", "out-for-delivery"),
    "01": ("delivered", "delivered"),
    "02": ("delivery_attempt", "exception"),
    "04": ("exception", "exception"),
    "05": ("exception", "exception"),
}


class USPSAdapter(CarrierAdapter):
    carrier = "usps"
    display_name = "USPS"
    default_base_url = "https://apis.usps.com"
    tracking_patterns = (
        r"9\d{19,21}",  # IMpb, 20-22 digits
        r"9\d{25}",
        r"[A-Z]{2}\d{9}US",  # International
    )

    async def _request(self, client: httpx.AsyncClient, tracking_number: str) -> httpx.Response:
        return await client.get(
            f"/tracking/v3/tracking/{tracking_number}",
            params={"expand": "DETAIL"},
            headers={"Authorization": f"Bearer {self.config.api_key}"},
        )

    def _parse_events(self, data: dict[str, Any]) -> list[TrackingEvent | None]:
        events = []
        for item in data.get("trackingEvents", []):
            code = item.get("eventCode", "")
            event_type, hint = EVENT_CODES.get(code, ("location_update", None))
            events.append(
                self._event(
                    event_type=event_type,
                    status=hint,
                    description=item.get("eventType") or "USPS tracking update",
                    location=join_location(item.get("eventCity"), item.get("eventState"), item.get("eventZIP")),
                    event_time=parse_timestamp(item.get("eventTimestamp")),
                    metadata={"eventCode": code},
                )
            )
        return events
