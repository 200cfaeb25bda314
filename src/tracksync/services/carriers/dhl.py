from typing import Any

import httpx

from tracksync.models.shipment import TrackingEvent
from tracksync.services.carriers.base import CarrierAdapter, parse_timestamp

# DHL unified tracking statusCode -> (event type, shipment status hint)
STATUS_CODES: dict[str, tuple[str, str | None]] = {
    "pre-transit": ("pickup", "pending"),
    "transit": ("in_transit", "in-transit"),
    "delivered": ("delivered", "delivered"),
    "failure": ("exception", "exception"),
}


class DHLAdapter(CarrierAdapter):
    carrier = "dhl"
    display_name = "DHL"
    default_base_url = "https://api-eu.dhl.com"
    tracking_patterns = (
        r"\d{10}",  # Express
        r"\d{11}",
        r"[A-Z]{2}\d{9}[A-Z]{2}",  # eCommerce
        r"GM\d{13}[A-Z]{2}",  # Global Mail
    )

    async def _request(self, client: httpx.AsyncClient, tracking_number: str) -> httpx.Response:
        return await client.get(
            "/track/shipments",
            params={"trackingNumber": tracking_number},
            headers={"DHL-API-Key": self.config.api_key or ""},
        )

    def _parse_events(self, data: dict[str, Any]) -> list[TrackingEvent | None]:
        events = []
        for shipment in data.get("shipments", [])[:1]:
            for item in shipment.get("events", []):
                code = item.get("statusCode", "unknown")
                event_type, hint = STATUS_CODES.get(code, ("location_update", None))
                description = item.get("description") or item.get("status") or ""
                # DHL reports out-for-delivery as a transit event
                if hint == "in-transit" and "out for delivery" in description.lower():
                    event_type, hint = "out_for_delivery", "out-for-delivery"

                address = item.get("location", {}).get("address", {})
                events.append(
                    self._event(
                        event_type=event_type,
                        status=hint,
                        description=description or "DHL tracking update",
                        location=address.get("addressLocality"),
                        event_time=parse_timestamp(item.get("timestamp")),
                        metadata={"statusCode": code},
                    )
                )
        return events
