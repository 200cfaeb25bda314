import asyncio
import logging

from tenacity import AsyncRetrying, retry_if_exception

from tracksync.config import settings
from tracksync.models.shipment import TrackingEvent
from tracksync.services.carriers.base import CarrierAdapter, CarrierAPIError
from tracksync.services.carriers.factory import CarrierAdapterFactory, adapter_factory
from tracksync.services.rate_limiter import RateLimiter, RetryPolicy

logger = logging.getLogger(__name__)


def should_retry(error: BaseException) -> bool:
    # A RATE_LIMITED retry inside the cooldown would only fail fast again
    return isinstance(error, CarrierAPIError) and error.retryable and error.code != "RATE_LIMITED"


def default_rate_limiter() -> RateLimiter:
    return RateLimiter(
        requests_per_minute=settings.rate_limit_per_minute,
        cooldown_seconds=settings.rate_limit_cooldown_seconds,
        per_carrier_limits={
            carrier: getattr(settings, f"{carrier}_rate_limit_per_minute")
            for carrier in CarrierAdapterFactory.supported_carriers()
        },
    )


def default_retry_policy() -> RetryPolicy:
    return RetryPolicy(
        max_attempts=settings.retry_max_attempts,
        base_delay=settings.retry_base_delay_seconds,
        max_delay=settings.retry_max_delay_seconds,
        multiplier=settings.retry_backoff_multiplier,
    )


class CarrierAPIService:
    """Runs carrier adapter calls through the rate limiter, a timeout and retries."""

    def __init__(
        self,
        rate_limiter: RateLimiter | None = None,
        retry: RetryPolicy | None = None,
        timeout: float | None = None,
        factory: CarrierAdapterFactory | None = None,
    ):
        self.rate_limiter = rate_limiter or default_rate_limiter()
        self.retry = retry or default_retry_policy()
        self.timeout = timeout if timeout is not None else settings.request_timeout_seconds
        self.factory = factory or adapter_factory

    async def get_tracking_updates(self, tracking_number: str, carrier: str) -> list[TrackingEvent]:
        """Fetch tracking events for one shipment from its carrier."""
        adapter = self.factory.get_adapter(carrier)
        retrying = AsyncRetrying(
            stop=self.retry.stop(),
            wait=self.retry.wait(),
            retry=retry_if_exception(should_retry),
            reraise=True,
        )

        async for attempt in retrying:
            with attempt:
                return await self._call(adapter, tracking_number, carrier, attempt.retry_state.attempt_number)

    async def _call(
        self,
        adapter: CarrierAdapter,
        tracking_number: str,
        carrier: str,
        attempt: int,
    ) -> list[TrackingEvent]:
        try:
            self.rate_limiter.check_rate_limit(carrier)
            self.rate_limiter.record_request(carrier)
            try:
                return await asyncio.wait_for(adapter.get_tracking_events(tracking_number), self.timeout)
            except asyncio.TimeoutError as e:
                raise CarrierAPIError(f"Operation timed out after {self.timeout}s", carrier, "TIMEOUT") from e
        except CarrierAPIError as e:
            logger.warning(
                f"API operation getTrackingUpdates-{tracking_number} failed "
                f"(attempt {attempt}/{self.retry.max_attempts}): {e.message}"
            )
            if e.status_code == 429:
                self.rate_limiter.block_carrier(carrier)
            raise

    def validate_tracking_number(self, tracking_number: str, carrier: str) -> bool:
        return self.factory.validate_tracking_number(tracking_number, carrier)

    def is_carrier_available(self, carrier: str) -> bool:
        try:
            return self.factory.get_adapter(carrier).is_available()
        except CarrierAPIError as e:
            logger.error(f"Error checking availability for {carrier}: {e}")
            return False

    def get_service_stats(self) -> dict:
        return {
            "carriers": [
                {**self.rate_limiter.get_status(carrier), "available": self.is_carrier_available(carrier)}
                for carrier in self.factory.supported_carriers()
            ],
            "config": {
                "requestsPerMinute": self.rate_limiter.requests_per_minute,
                "cooldownSeconds": self.rate_limiter.cooldown_ms / 1000,
                "timeoutSeconds": self.timeout,
                "retry": {
                    "maxAttempts": self.retry.max_attempts,
                    "baseDelay": self.retry.base_delay,
                    "maxDelay": self.retry.max_delay,
                    "multiplier": self.retry.multiplier,
                },
            },
        }
