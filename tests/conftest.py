import os

# Settings are read at import time
os.environ.setdefault("TRACKSYNC_SECRET_KEY", "test-secret")
os.environ.setdefault("TRACKSYNC_SCHEDULER_ENABLED", "false")

from datetime import datetime, timezone

import pytest

from tracksync.config import settings
from tracksync.models.shipment import Shipment, TrackingEvent
from tracksync.services.carriers.factory import adapter_factory
from tracksync.storage import database


class FakeCarrierAPI:
    """Stands in for CarrierAPIService: canned events or errors per tracking number."""

    def __init__(self, responses=None):
        self.responses = responses or {}
        self.calls = []

    async def get_tracking_updates(self, tracking_number, carrier):
        self.calls.append((tracking_number, carrier))
        response = self.responses.get(tracking_number, [])
        if isinstance(response, Exception):
            raise response
        return [event.model_copy() for event in response]

    def get_service_stats(self):
        return {"carriers": [], "config": {}}


@pytest.fixture(autouse=True)
def data_dir(tmp_path, monkeypatch):
    """Every test gets its own SQLite file."""
    monkeypatch.setattr(settings, "data_dir", str(tmp_path))
    database.init_db()
    adapter_factory.clear_cache()
    yield tmp_path
    adapter_factory.clear_cache()


@pytest.fixture
def fake_api():
    return FakeCarrierAPI()


@pytest.fixture
def make_shipment():
    def _make(save=True, **fields):
        fields.setdefault("carrier", "fedex")
        fields.setdefault("carrier_tracking_number", "123456789012")
        shipment = Shipment(**fields)
        if save:
            database.save("shipments", shipment)
        return shipment

    return _make


@pytest.fixture
def make_event():
    def _make(hour, status=None, event_type="in_transit", minute=0, **fields):
        return TrackingEvent(
            event_type=event_type,
            status=status,
            description=fields.pop("description", f"Scan at {hour:02d}:{minute:02d}"),
            event_time=datetime(2024, 3, 1, hour, minute, tzinfo=timezone.utc),
            **fields,
        )

    return _make
