"""
Base class for carrier tracking API adapters.

An adapter turns a tracking number into normalized TrackingEvents for one
carrier. Adapters hold configuration only; every call opens its own
httpx client, so instances can be shared and swapped freely.
"""

import logging
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from typing import Any

import httpx

from tracksync.models.shipment import Carrier, TrackingEvent, as_utc

logger = logging.getLogger(__name__)

NON_RETRYABLE_CODES = frozenset({"INVALID_TRACKING_NUMBER", "UNSUPPORTED_CARRIER"})


class CarrierAPIError(Exception):
    """A transport or carrier-side failure while talking to a carrier API."""

    def __init__(
        self,
        message: str,
        carrier: str,
        code: str,
        status_code: int | None = None,
        details: Any = None,
    ):
        super().__init__(message)
        self.message = message
        self.carrier = carrier
        self.code = code
        self.status_code = status_code
        self.details = details

    @property
    def retryable(self) -> bool:
        return self.code not in NON_RETRYABLE_CODES and self.status_code != 404

    def __repr__(self) -> str:
        return f"CarrierAPIError(carrier={self.carrier!r}, code={self.code!r}, status_code={self.status_code!r})"


@dataclass
class CarrierConfig:
    api_key: str | None = None
    base_url: str | None = None
    timeout: float = 30.0
    rate_limit_per_minute: int | None = None
    # Test hook: lets callers route requests through httpx.MockTransport
    transport: httpx.AsyncBaseTransport | None = None


def parse_timestamp(value: str | None) -> datetime | None:
    """Parse an ISO-8601 carrier timestamp into an aware UTC datetime."""
    if not value:
        return None
    try:
        return as_utc(datetime.fromisoformat(value.replace("Z", "+00:00")))
    except ValueError:
        logger.warning(f"Unparseable carrier timestamp: {value!r}")
        return None


def normalize_tracking_number(tracking_number: str) -> str:
    return re.sub(r"\s+", "", tracking_number).upper()


def join_location(*parts: str | None) -> str | None:
    location = ", ".join(p for p in parts if p)
    return location or None


class CarrierAdapter(ABC):
    carrier: Carrier
    display_name: str
    default_base_url: str
    tracking_patterns: tuple[str, ...] = ()

    def __init__(self, config: CarrierConfig | None = None):
        self.config = config or CarrierConfig()
        self.base_url = (self.config.base_url or self.default_base_url).rstrip("/")
        self._compiled = tuple(re.compile(p) for p in self.tracking_patterns)

    def normalize_tracking_number(self, tracking_number: str) -> str:
        return normalize_tracking_number(tracking_number)

    def validate_tracking_number(self, tracking_number: str) -> bool:
        """Check the tracking number shape. Never touches the network."""
        if not tracking_number or not isinstance(tracking_number, str):
            return False
        cleaned = self.normalize_tracking_number(tracking_number)
        return any(pattern.fullmatch(cleaned) for pattern in self._compiled)

    def is_available(self) -> bool:
        if not self.config.api_key:
            logger.warning(f"No {self.display_name} API key configured")
            return False
        return True

    async def get_tracking_events(self, tracking_number: str) -> list[TrackingEvent]:
        """Fetch tracking events for a tracking number, oldest first."""
        if not self.validate_tracking_number(tracking_number):
            raise CarrierAPIError(
                f"Invalid {self.display_name} tracking number format",
                self.carrier,
                "INVALID_TRACKING_NUMBER",
            )
        if not self.config.api_key:
            raise CarrierAPIError(
                f"{self.display_name} API credentials are not configured",
                self.carrier,
                "NOT_CONFIGURED",
            )

        number = self.normalize_tracking_number(tracking_number)
        try:
            async with httpx.AsyncClient(
                base_url=self.base_url,
                timeout=self.config.timeout,
                transport=self.config.transport,
            ) as client:
                response = await self._request(client, number)
        except httpx.TimeoutException as e:
            raise CarrierAPIError(
                f"{self.display_name} API request timed out", self.carrier, "TIMEOUT"
            ) from e
        except httpx.HTTPError as e:
            raise CarrierAPIError(
                f"{self.display_name} API request failed: {e}", self.carrier, "NETWORK_ERROR"
            ) from e

        self._raise_for_status(response)

        try:
            data = response.json()
        except ValueError as e:
            raise CarrierAPIError(
                f"{self.display_name} API returned invalid JSON",
                self.carrier,
                "INVALID_RESPONSE",
                response.status_code,
            ) from e

        events = [event for event in self._parse_events(data) if event is not None]
        return sorted(events, key=lambda event: event.event_time)

    def _raise_for_status(self, response: httpx.Response) -> None:
        status = response.status_code
        if status == 200:
            return

        name = self.display_name
        if status == 404:
            raise CarrierAPIError(f"{name} has no record of this tracking number", self.carrier, "NOT_FOUND", 404)
        if status == 429:
            raise CarrierAPIError(f"{name} API rate limit hit", self.carrier, "RATE_LIMITED", 429)
        if status in (401, 403):
            raise CarrierAPIError(f"{name} API rejected credentials", self.carrier, "UNAUTHORIZED", status)
        if status >= 500:
            raise CarrierAPIError(f"{name} API unavailable ({status})", self.carrier, "CARRIER_UNAVAILABLE", status)
        raise CarrierAPIError(f"{name} API error ({status})", self.carrier, "API_ERROR", status)

    def _event(
        self,
        *,
        event_type: str,
        description: str,
        event_time: datetime | None,
        status: str | None = None,
        location: str | None = None,
        carrier_event_id: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> TrackingEvent | None:
        if event_time is None:
            # Without the carrier time the scan has no stable identity
            logger.warning(f"Dropping {self.display_name} event without a usable timestamp: {description!r}")
            return None
        return TrackingEvent(
            event_type=event_type,
            status=status,
            description=description,
            location=location,
            source="api_sync",
            carrier_event_id=carrier_event_id,
            event_time=event_time,
            metadata={"carrier": self.carrier, **(metadata or {})},
        )

    @abstractmethod
    async def _request(self, client: httpx.AsyncClient, tracking_number: str) -> httpx.Response:
        """Issue the carrier's tracking request."""

    @abstractmethod
    def _parse_events(self, data: dict[str, Any]) -> list[TrackingEvent | None]:
        """Convert the carrier payload into TrackingEvents. Undated scans come back as None."""
