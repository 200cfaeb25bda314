from typing import Any

import httpx

from tracksync.models.shipment import TrackingEvent
from tracksync.services.carriers.base import (
    CarrierAdapter,
    CarrierAPIError,
    join_location,
    parse_timestamp,
)

# FedEx scan event codes -> (event type, shipment status hint)
EVENT_CODES: dict[str, tuple[str, str | None]] = {
    "OC": ("pickup", "pending"),  # shipment information sent to FedEx
    "PU": ("pickup", "in-transit"),
    "IT": ("in_transit", "in-transit"),
    "AR": ("in_transit", "in-transit"),
    "DP": ("in_transit", "in-transit"),
    "AF": ("location_update", None),
    "OD": ("out_for_delivery", "out-for-delivery"),
    "DL": ("delivered", "delivered"),
    "DE": ("delivery_attempt", "exception"),
    "SE": ("exception", "exception"),
    "CA": ("cancelled", "cancelled"),
}


class FedExAdapter(CarrierAdapter):
    carrier = "fedex"
    display_name = "FedEx"
    default_base_url = "https://apis.fedex.com"
    tracking_patterns = (
        r"\d{12}",  # Express
        r"\d{14}",  # Ground
        r"\d{20}",  # SmartPost
        r"96\d{20}",  # Ground 96
    )

    async def _request(self, client: httpx.AsyncClient, tracking_number: str) -> httpx.Response:
        return await client.post(
            "/track/v1/trackingnumbers",
            json={
                "includeDetailedScans": True,
                "trackingInfo": [{"trackingNumberInfo": {"trackingNumber": tracking_number}}],
            },
            headers={
                "Authorization": f"Bearer {self.config.api_key}",
                "Content-Type": "application/json",
            },
        )

    def _parse_events(self, data: dict[str, Any]) -> list[TrackingEvent | None]:
        complete = data.get("output", {}).get("completeTrackResults", [])
        if not complete:
            return []

        events = []
        for result in complete[0].get("trackResults", []):
            error = result.get("error")
            if error:
                code = error.get("code", "")
                if code.endswith("NOTFOUND"):
                    raise CarrierAPIError(
                        error.get("message", "Tracking number not found"), self.carrier, "NOT_FOUND", 404
                    )
                raise CarrierAPIError(error.get("message", code), self.carrier, "API_ERROR")

            for scan in result.get("scanEvents", []):
                code = scan.get("eventType") or scan.get("derivedStatusCode") or ""
                event_type, hint = EVENT_CODES.get(code, ("location_update", None))
                location = scan.get("scanLocation", {})
                events.append(
                    self._event(
                        event_type=event_type,
                        status=hint,
                        description=scan.get("eventDescription") or "FedEx tracking update",
                        location=join_location(
                            location.get("city"),
                            location.get("stateOrProvinceCode"),
                            location.get("countryCode"),
                        ),
                        event_time=parse_timestamp(scan.get("date")),
                        metadata={"eventType": code, "exceptionCode": scan.get("exceptionCode") or None},
                    )
                )
        return events
