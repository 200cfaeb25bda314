from datetime import datetime, timedelta, timezone

import httpx
import pytest

from tracksync.models.shipment import Shipment
from tracksync.services import sync as sync_service
from tracksync.services.carrier_api import CarrierAPIService
from tracksync.services.carriers.base import CarrierAPIError, CarrierConfig
from tracksync.services.carriers.factory import CarrierAdapterFactory
from tracksync.services.rate_limiter import RateLimiter, RetryPolicy
from tracksync.services.reconciler import ReconciliationError
from tracksync.services.sync import SyncError, SyncOrchestrator, select_due_shipments
from tracksync.storage import database

NOW = datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def orchestrator(fake_api):
    return SyncOrchestrator(api_service=fake_api, delays={}, parallel_carriers=False)


def stored(shipment):
    return database.load("shipments", shipment.id, Shipment)


# =============================================================================
# Due selection
# =============================================================================


class TestDueSelection:
    def test_terminal_and_incomplete_shipments_are_never_due(self, make_shipment):
        due = make_shipment()
        make_shipment(status="delivered")
        make_shipment(status="cancelled")
        make_shipment(carrier=None)
        make_shipment(carrier_tracking_number=None)

        assert [s.id for s in select_due_shipments(NOW)] == [due.id]

    def test_recent_success_is_not_due(self, make_shipment):
        fresh = make_shipment(api_sync_status="success", last_api_sync=NOW - timedelta(minutes=10))
        stale = make_shipment(api_sync_status="success", last_api_sync=NOW - timedelta(hours=2))

        due = [s.id for s in select_due_shipments(NOW)]

        assert stale.id in due
        assert fresh.id not in due

    def test_failed_shipment_due_only_after_backoff(self, make_shipment):
        make_shipment(
            api_sync_status="failed",
            last_api_sync=NOW - timedelta(minutes=3),
            failing_since=NOW - timedelta(minutes=3),
        )

        assert select_due_shipments(NOW) == []
        assert len(select_due_shipments(NOW + timedelta(minutes=2))) == 1

    async def test_load_failure_raises_sync_error(self, orchestrator, monkeypatch):
        def broken_load_all(*args):
            raise RuntimeError("unable to open database file")

        monkeypatch.setattr(sync_service.database, "load_all", broken_load_all)

        with pytest.raises(SyncError):
            await orchestrator.sync_due_shipments(NOW)
        with pytest.raises(SyncError):
            await orchestrator.sync_active_shipments()


# =============================================================================
# Sync passes
# =============================================================================


class TestSyncPass:
    async def test_partial_failure_is_isolated(self, orchestrator, fake_api, make_shipment, make_event):
        first = make_shipment(carrier_tracking_number="111111111111")
        second = make_shipment(carrier_tracking_number="222222222222")
        third = make_shipment(carrier_tracking_number="333333333333")
        fake_api.responses = {
            "111111111111": [make_event(10, "in-transit")],
            "222222222222": CarrierAPIError("FedEx API unavailable (503)", "fedex", "CARRIER_UNAVAILABLE", 503),
            "333333333333": [make_event(10, "in-transit")],
        }

        summary = await orchestrator.sync_due_shipments(NOW)

        assert (summary.total_shipments, summary.successful, summary.failed, summary.skipped) == (3, 2, 1, 0)
        assert [r.shipment_id for r in summary.results] == [first.id, second.id, third.id]
        assert stored(first).status == "in-transit"
        assert stored(third).api_sync_status == "success"

        failed = stored(second)
        assert failed.api_sync_status == "failed"
        assert failed.needs_review
        assert failed.api_error == "FedEx API unavailable (503)"
        assert summary.results[1].next_retry_after == failed.last_api_sync + timedelta(minutes=5)

    async def test_unexpected_exception_is_recorded_as_failure(self, orchestrator, fake_api, make_shipment):
        shipment = make_shipment()
        fake_api.responses = {shipment.carrier_tracking_number: RuntimeError("boom")}

        summary = await orchestrator.sync_due_shipments(NOW)

        assert summary.failed == 1
        assert summary.results[0].error == "boom"

    async def test_missing_tracking_data_is_skipped(self, orchestrator, fake_api, make_shipment):
        shipment = make_shipment(save=False, carrier=None)

        summary = await orchestrator.run([shipment])

        assert summary.skipped == 1
        assert summary.results[0].error == "Missing required data for sync"
        assert fake_api.calls == []

    async def test_backoff_skips_scheduled_but_not_manual(self, orchestrator, fake_api, make_shipment):
        shipment = make_shipment(
            api_sync_status="failed",
            last_api_sync=datetime.now(timezone.utc),
            failing_since=datetime.now(timezone.utc),
        )

        scheduled = await orchestrator.run([shipment], trigger="scheduled")
        assert scheduled.skipped == 1
        assert scheduled.results[0].next_retry_after is not None
        assert fake_api.calls == []

        manual = await orchestrator.sync_shipment(shipment)
        assert manual.successful == 1
        assert manual.trigger == "manual"
        assert len(fake_api.calls) == 1

    async def test_active_resync_ignores_staleness(self, orchestrator, fake_api, make_shipment):
        make_shipment(api_sync_status="success", last_api_sync=datetime.now(timezone.utc))
        make_shipment(status="delivered")

        summary = await orchestrator.sync_active_shipments()

        assert summary.trigger == "on_demand"
        assert summary.successful == 1

    async def test_audit_event_appended(self, orchestrator, fake_api, make_shipment, make_event):
        shipment = make_shipment()
        fake_api.responses = {shipment.carrier_tracking_number: [make_event(10, "in-transit")]}

        await orchestrator.sync_active_shipments()

        [audit] = [e for e in database.load_events(shipment.id) if e.event_type == "api_sync"]
        assert audit.description == "Bulk sync completed successfully. 1 new events added. Status updated."
        assert audit.source_id == "bulk-sync"
        assert audit.metadata["eventsAdded"] == 1


# =============================================================================
# Failure streaks
# =============================================================================


class TestFailureStreak:
    async def test_streak_start_kept_across_failures_and_cleared_on_success(
        self, orchestrator, fake_api, make_shipment
    ):
        shipment = make_shipment()
        number = shipment.carrier_tracking_number
        fake_api.responses = {number: CarrierAPIError("down", "fedex", "CARRIER_UNAVAILABLE", 503)}

        await orchestrator.sync_shipment(shipment)
        started = stored(shipment).failing_since
        await orchestrator.sync_shipment(stored(shipment))

        after_second = stored(shipment)
        assert after_second.failing_since == started
        assert after_second.last_api_sync >= started

        fake_api.responses = {number: []}
        await orchestrator.sync_shipment(after_second)

        recovered = stored(shipment)
        assert recovered.failing_since is None
        assert recovered.api_sync_status == "success"
        assert not recovered.needs_review
        assert recovered.api_error is None

    async def test_invalid_tracking_number_stays_on_first_tier(self, orchestrator, fake_api, make_shipment):
        shipment = make_shipment()
        fake_api.responses = {
            shipment.carrier_tracking_number: CarrierAPIError(
                "Invalid FedEx tracking number format", "fedex", "INVALID_TRACKING_NUMBER"
            )
        }

        await orchestrator.sync_shipment(shipment)
        summary = await orchestrator.sync_shipment(stored(shipment))

        result = summary.results[0]
        assert result.next_retry_after == result.last_sync + timedelta(minutes=5)


# =============================================================================
# Reconciliation errors and pacing
# =============================================================================


class TestReconciliationError:
    async def test_counts_as_success_with_error(self, orchestrator, fake_api, make_shipment, make_event, monkeypatch):
        shipment = make_shipment()
        fake_api.responses = {shipment.carrier_tracking_number: [make_event(10, "in-transit")]}

        def broken_reconcile(*args, **kwargs):
            raise ReconciliationError("Could not save tracking event: disk full")

        monkeypatch.setattr(sync_service, "reconcile", broken_reconcile)

        summary = await orchestrator.sync_due_shipments(NOW)

        assert summary.successful == 1
        assert summary.results[0].error.startswith("Reconciliation failed")
        assert stored(shipment).api_sync_status == "success"


class TestPacing:
    def test_default_delays_by_trigger(self, fake_api):
        orchestrator = SyncOrchestrator(api_service=fake_api)

        assert orchestrator.delay_for("dhl", "scheduled") == 4.0
        assert orchestrator.delay_for("dhl", "on_demand") == 2.0
        assert orchestrator.delay_for("usps", "manual") == 0.5
        assert orchestrator.delay_for(None, "scheduled") == 2.0

    async def test_waits_between_calls_but_not_after_last_or_skipped(self, fake_api, make_shipment, monkeypatch):
        waits = []

        async def fake_sleep(seconds):
            waits.append(seconds)

        monkeypatch.setattr(sync_service.asyncio, "sleep", fake_sleep)
        orchestrator = SyncOrchestrator(api_service=fake_api, delays={"fedex": 3.0}, parallel_carriers=False)
        shipments = [
            make_shipment(save=False, carrier=None),
            make_shipment(carrier_tracking_number="111111111111"),
            make_shipment(carrier_tracking_number="222222222222"),
        ]

        await orchestrator.run(shipments)

        assert waits == [3.0]


class TestParallelCarriers:
    async def test_results_keep_input_order(self, fake_api, make_shipment):
        orchestrator = SyncOrchestrator(api_service=fake_api, delays={}, parallel_carriers=True)
        shipments = [
            make_shipment(carrier="fedex", carrier_tracking_number="111111111111"),
            make_shipment(carrier="dhl", carrier_tracking_number="1234567890"),
            make_shipment(carrier="fedex", carrier_tracking_number="222222222222"),
        ]

        summary = await orchestrator.run(shipments)

        assert [r.shipment_id for r in summary.results] == [s.id for s in shipments]
        assert summary.successful == 3


# =============================================================================
# End to end through the FedEx adapter
# =============================================================================


class TestEndToEnd:
    async def test_fedex_shipment_reaches_out_for_delivery(self, make_shipment):
        def fedex(request):
            return httpx.Response(
                200,
                json={
                    "output": {
                        "completeTrackResults": [
                            {
                                "trackResults": [
                                    {
                                        "scanEvents": [
                                            {
                                                "date": "2024-03-01T10:00:00Z",
                                                "eventType": "IT",
                                                "eventDescription": "In transit",
                                            },
                                            {
                                                "date": "2024-03-01T11:00:00Z",
                                                "eventType": "OD",
                                                "eventDescription": "On FedEx vehicle for delivery",
                                            },
                                        ]
                                    }
                                ]
                            }
                        ]
                    }
                },
            )

        factory = CarrierAdapterFactory()
        factory.configure("fedex", CarrierConfig(api_key="k", transport=httpx.MockTransport(fedex)))
        api = CarrierAPIService(
            rate_limiter=RateLimiter(),
            retry=RetryPolicy(base_delay=0),
            timeout=5,
            factory=factory,
        )
        orchestrator = SyncOrchestrator(api_service=api, delays={}, parallel_carriers=False)
        shipment = make_shipment(carrier="fedex", carrier_tracking_number="123456789012")

        summary = await orchestrator.sync_due_shipments()

        after = stored(shipment)
        assert after.status == "out-for-delivery"
        assert after.api_sync_status == "success"
        assert summary.successful == 1
        assert summary.results[0].events_added == 2

        events = database.load_events(shipment.id)
        assert len([e for e in events if e.event_type != "api_sync"]) == 2
        assert len([e for e in events if e.event_type == "api_sync"]) == 1


class TestUndatedScans:
    async def test_repeat_sync_adds_nothing_new(self, make_shipment):
        def usps(request):
            return httpx.Response(
                200,
                json={
                    "trackingEvents": [
                        {"eventCode": "10", "eventType": "In Transit", "eventTimestamp": None},
                        {"eventCode": "03", "eventType": "Accepted", "eventTimestamp": "2024-03-01T09:00:00Z"},
                    ]
                },
            )

        factory = CarrierAdapterFactory()
        factory.configure("usps", CarrierConfig(api_key="k", transport=httpx.MockTransport(usps)))
        api = CarrierAPIService(rate_limiter=RateLimiter(), retry=RetryPolicy(base_delay=0), timeout=5, factory=factory)
        orchestrator = SyncOrchestrator(api_service=api, delays={}, parallel_carriers=False)
        shipment = make_shipment(carrier="usps", carrier_tracking_number="9400111899223100000000")

        first = await orchestrator.sync_shipment(shipment)
        second = await orchestrator.sync_shipment(stored(shipment))

        assert first.results[0].events_added == 1
        assert second.results[0].events_added == 0
        assert stored(shipment).status == "in-transit"


class TestStatusSaveFailure:
    async def test_audit_event_still_written(self, orchestrator, fake_api, make_shipment, make_event, monkeypatch):
        shipment = make_shipment()
        fake_api.responses = {shipment.carrier_tracking_number: [make_event(10, "in-transit")]}

        def locked(shipment):
            raise RuntimeError("database is locked")

        monkeypatch.setattr(sync_service.database, "update_sync_fields", locked)

        summary = await orchestrator.sync_shipment(shipment)

        result = summary.results[0]
        assert result.success
        assert result.events_added == 1
        assert result.error == "Could not record sync status: database is locked"
        audits = [e for e in database.load_events(shipment.id) if e.event_type == "api_sync"]
        assert len(audits) == 1
        assert audits[0].description.startswith("Manual sync completed successfully")
