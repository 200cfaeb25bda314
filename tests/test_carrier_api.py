import asyncio

import httpx
import pytest

from tracksync.services.carrier_api import CarrierAPIService, should_retry
from tracksync.services.carriers.base import CarrierAPIError, CarrierConfig
from tracksync.services.carriers.factory import CarrierAdapterFactory
from tracksync.services.rate_limiter import RateLimiter, RetryPolicy

FEDEX_NUMBER = "123456789012"

EMPTY_FEDEX_RESPONSE = {"output": {"completeTrackResults": [{"trackResults": [{"scanEvents": []}]}]}}


class ScriptedCarrier:
    """MockTransport handler answering with a fixed sequence of status codes."""

    def __init__(self, *status_codes):
        self.status_codes = list(status_codes)
        self.requests = []

    def __call__(self, request):
        self.requests.append(request)
        status_code = self.status_codes.pop(0) if len(self.status_codes) > 1 else self.status_codes[0]
        return httpx.Response(status_code, json=EMPTY_FEDEX_RESPONSE if status_code == 200 else {})


def make_service(handler, rate_limiter=None, timeout=5.0, max_attempts=3):
    factory = CarrierAdapterFactory()
    factory.configure("fedex", CarrierConfig(api_key="k", transport=httpx.MockTransport(handler)))
    return CarrierAPIService(
        rate_limiter=rate_limiter or RateLimiter(),
        retry=RetryPolicy(max_attempts=max_attempts, base_delay=0, max_delay=0),
        timeout=timeout,
        factory=factory,
    )


class TestRetries:
    async def test_success_returns_events(self):
        carrier = ScriptedCarrier(200)
        service = make_service(carrier)

        assert await service.get_tracking_updates(FEDEX_NUMBER, "fedex") == []
        assert len(carrier.requests) == 1

    async def test_retries_transient_failures(self):
        carrier = ScriptedCarrier(503, 200)
        service = make_service(carrier)

        await service.get_tracking_updates(FEDEX_NUMBER, "fedex")

        assert len(carrier.requests) == 2

    async def test_gives_up_after_max_attempts(self):
        carrier = ScriptedCarrier(503)
        service = make_service(carrier)

        with pytest.raises(CarrierAPIError) as exc_info:
            await service.get_tracking_updates(FEDEX_NUMBER, "fedex")

        assert exc_info.value.code == "CARRIER_UNAVAILABLE"
        assert len(carrier.requests) == 3

    async def test_invalid_tracking_number_is_attempted_once(self):
        """Non-retryable errors short-circuit the retry loop."""
        carrier = ScriptedCarrier(200)
        limiter = RateLimiter()
        service = make_service(carrier, rate_limiter=limiter)

        with pytest.raises(CarrierAPIError) as exc_info:
            await service.get_tracking_updates("bogus", "fedex")

        assert exc_info.value.code == "INVALID_TRACKING_NUMBER"
        assert limiter.get_status("fedex")["requests_in_last_minute"] == 1
        assert carrier.requests == []

    async def test_not_found_is_not_retried(self):
        carrier = ScriptedCarrier(404)
        service = make_service(carrier)

        with pytest.raises(CarrierAPIError) as exc_info:
            await service.get_tracking_updates(FEDEX_NUMBER, "fedex")

        assert exc_info.value.code == "NOT_FOUND"
        assert len(carrier.requests) == 1

    async def test_unsupported_carrier(self):
        service = make_service(ScriptedCarrier(200))

        with pytest.raises(CarrierAPIError) as exc_info:
            await service.get_tracking_updates(FEDEX_NUMBER, "acme")

        assert exc_info.value.code == "UNSUPPORTED_CARRIER"

    async def test_timeout_becomes_carrier_error(self):
        async def slow(request):
            await asyncio.sleep(1)
            return httpx.Response(200, json=EMPTY_FEDEX_RESPONSE)

        service = make_service(slow, timeout=0.01, max_attempts=2)

        with pytest.raises(CarrierAPIError) as exc_info:
            await service.get_tracking_updates(FEDEX_NUMBER, "fedex")

        assert exc_info.value.code == "TIMEOUT"
        assert "timed out" in exc_info.value.message


class TestRetryPredicate:
    def test_transient_errors_are_retried(self):
        assert should_retry(CarrierAPIError("down", "fedex", "CARRIER_UNAVAILABLE", 503))
        assert should_retry(CarrierAPIError("slow", "fedex", "TIMEOUT"))

    def test_permanent_and_rate_limit_errors_are_not(self):
        assert not should_retry(CarrierAPIError("bad", "fedex", "INVALID_TRACKING_NUMBER"))
        assert not should_retry(CarrierAPIError("gone", "fedex", "NOT_FOUND", 404))
        assert not should_retry(CarrierAPIError("slow down", "fedex", "RATE_LIMITED", 429))
        assert not should_retry(ValueError("not a carrier error"))


class TestRateLimiting:
    async def test_429_blocks_carrier_and_next_call_fails_fast(self):
        carrier = ScriptedCarrier(429)
        limiter = RateLimiter(cooldown_seconds=60)
        service = make_service(carrier, rate_limiter=limiter)

        with pytest.raises(CarrierAPIError) as exc_info:
            await service.get_tracking_updates(FEDEX_NUMBER, "fedex")
        assert exc_info.value.status_code == 429
        assert limiter.get_status("fedex")["is_blocked"]

        with pytest.raises(CarrierAPIError) as exc_info:
            await service.get_tracking_updates(FEDEX_NUMBER, "fedex")
        assert exc_info.value.code == "RATE_LIMITED"
        assert exc_info.value.status_code is None
        assert len(carrier.requests) == 1

    async def test_exhausted_window_stops_retries(self):
        carrier = ScriptedCarrier(503)
        service = make_service(carrier, rate_limiter=RateLimiter(requests_per_minute=1))

        with pytest.raises(CarrierAPIError) as exc_info:
            await service.get_tracking_updates(FEDEX_NUMBER, "fedex")

        assert exc_info.value.code == "RATE_LIMITED"
        assert len(carrier.requests) == 1


class TestServiceStats:
    def test_stats_cover_every_carrier(self):
        service = make_service(ScriptedCarrier(200))

        stats = service.get_service_stats()

        carriers = {entry["carrier"]: entry for entry in stats["carriers"]}
        assert set(carriers) == {"ups", "fedex", "dhl", "usps"}
        assert carriers["fedex"]["available"] is True
        assert stats["config"]["retry"]["maxAttempts"] == 3
        assert service.validate_tracking_number(FEDEX_NUMBER, "fedex")
        assert not service.is_carrier_available("acme")
