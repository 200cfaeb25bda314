from datetime import datetime, timezone
from typing import Any
from uuid import uuid4

import httpx

from tracksync.models.shipment import TrackingEvent
from tracksync.services.carriers.base import CarrierAdapter, CarrierAPIError, join_location

# UPS activity status type -> (event type, shipment status hint)
STATUS_TYPES: dict[str, tuple[str, str | None]] = {
    "M": ("pickup", "pending"),  # billing information received
    "P": ("pickup", "in-transit"),
    "I": ("in_transit", "in-transit"),
    "O": ("out_for_delivery", "out-for-delivery"),
    "D": ("delivered", "delivered"),
    "X": ("exception", "exception"),
    "RS": ("exception", "exception"),  # returned to shipper
    "MV": ("cancelled", "cancelled"),  # shipment voided
}


def _parse_ups_time(date: str | None, time: str | None) -> datetime | None:
    if not date:
        return None
    try:
        return datetime.strptime(f"{date}{time or '000000'}", "%Y%m%d%H%M%S").replace(tzinfo=timezone.utc)
    except ValueError:
        return None


class UPSAdapter(CarrierAdapter):
    carrier = "ups"
    display_name = "UPS"
    default_base_url = "https://onlinetools.ups.com/api"
    tracking_patterns = (
        r"1Z[A-Z0-9]{6}\d{2}[A-Z0-9]{8}",  # 1Z + shipper + service + package
        r"T\d{10}",
        r"K\d{10}",
    )

    async def _request(self, client: httpx.AsyncClient, tracking_number: str) -> httpx.Response:
        return await client.get(
            f"/track/v1/details/{tracking_number}",
            headers={
                "Authorization": f"Bearer {self.config.api_key}",
                "transId": uuid4().hex,
                "transactionSrc": "tracksync",
            },
        )

    def _parse_events(self, data: dict[str, Any]) -> list[TrackingEvent | None]:
        shipments = data.get("trackResponse", {}).get("shipment", [])
        if not shipments:
            return []

        warnings = shipments[0].get("warnings") or []
        if warnings and not shipments[0].get("package"):
            raise CarrierAPIError(
                warnings[0].get("message", "Tracking number not found"), self.carrier, "NOT_FOUND", 404
            )

        events = []
        for package in shipments[0].get("package", []):
            for activity in package.get("activity", []):
                status = activity.get("status", {})
                event_type, hint = STATUS_TYPES.get(status.get("type", ""), ("location_update", None))
                address = activity.get("location", {}).get("address", {})
                events.append(
                    self._event(
                        event_type=event_type,
                        status=hint,
                        description=status.get("description", "").strip() or "UPS tracking update",
                        location=join_location(
                            address.get("city"), address.get("stateProvince"), address.get("countryCode")
                        ),
                        event_time=_parse_ups_time(activity.get("date"), activity.get("time")),
                        metadata={"statusCode": status.get("code")},
                    )
                )
        return events
