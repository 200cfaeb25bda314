"""
Per-carrier request limiting for carrier API calls.

Each carrier gets a sliding 60 second window of request timestamps and an
optional block window set after the carrier answers HTTP 429. State lives
in the RateLimiter instance only, so a process restart starts from a clean
window.
"""

import logging
import math
import time
from dataclasses import dataclass, field
from typing import Callable

from tenacity import stop_after_attempt, wait_exponential

from tracksync.services.carriers.base import CarrierAPIError

logger = logging.getLogger(__name__)

WINDOW_MS = 60_000

# Seconds to wait between consecutive calls to the same carrier.
SCHEDULED_DELAYS: dict[str, float] = {"ups": 2.0, "fedex": 3.0, "dhl": 4.0, "usps": 1.0}
ON_DEMAND_DELAYS: dict[str, float] = {"ups": 1.0, "fedex": 1.5, "dhl": 2.0, "usps": 0.5}
DEFAULT_SCHEDULED_DELAY = 2.0
DEFAULT_ON_DEMAND_DELAY = 1.0


def carrier_delay(carrier: str | None, delays: dict[str, float], default: float) -> float:
    if carrier is None:
        return default
    return delays.get(carrier, default)


@dataclass
class RateLimitTracker:
    requests: list[int] = field(default_factory=list)
    is_blocked: bool = False
    block_until: int | None = None


@dataclass
class RetryPolicy:
    max_attempts: int = 3
    base_delay: float = 1.0
    max_delay: float = 30.0
    multiplier: float = 2.0

    def stop(self) -> stop_after_attempt:
        return stop_after_attempt(self.max_attempts)

    def wait(self) -> wait_exponential:
        """base_delay * multiplier ** (attempt - 1) seconds, capped at max_delay."""
        return wait_exponential(multiplier=self.base_delay, exp_base=self.multiplier, max=self.max_delay)


class RateLimiter:
    def __init__(
        self,
        requests_per_minute: int = 60,
        cooldown_seconds: float = 60.0,
        per_carrier_limits: dict[str, int] | None = None,
        clock: Callable[[], float] = time.time,
    ):
        self.requests_per_minute = requests_per_minute
        self.cooldown_ms = int(cooldown_seconds * 1000)
        self.per_carrier_limits = {k: v for k, v in (per_carrier_limits or {}).items() if v}
        self._clock = clock
        self._trackers: dict[str, RateLimitTracker] = {}

    def _now_ms(self) -> int:
        return int(self._clock() * 1000)

    def _tracker(self, carrier: str) -> RateLimitTracker:
        return self._trackers.setdefault(carrier, RateLimitTracker())

    def limit_for(self, carrier: str) -> int:
        return self.per_carrier_limits.get(carrier, self.requests_per_minute)

    def get_status(self, carrier: str) -> dict:
        tracker = self._tracker(carrier)
        now = self._now_ms()

        # Prune stale entries
        tracker.requests = [t for t in tracker.requests if t > now - WINDOW_MS]

        if tracker.is_blocked and tracker.block_until is not None and now >= tracker.block_until:
            tracker.is_blocked = False
            tracker.block_until = None

        limit = self.limit_for(carrier)
        return {
            "carrier": carrier,
            "requests_in_last_minute": len(tracker.requests),
            "requests_per_minute": limit,
            "requests_remaining": max(0, limit - len(tracker.requests)),
            "is_blocked": tracker.is_blocked,
            "block_until": tracker.block_until,
        }

    def check_rate_limit(self, carrier: str) -> None:
        """Raise RATE_LIMITED without touching the network if the carrier is saturated."""
        status = self.get_status(carrier)

        if status["is_blocked"]:
            wait_seconds = math.ceil((status["block_until"] - self._now_ms()) / 1000)
            raise CarrierAPIError(
                f"Rate limited for {carrier}. Try again in {wait_seconds} seconds",
                carrier,
                "RATE_LIMITED",
            )

        if status["requests_remaining"] <= 0:
            raise CarrierAPIError(
                f"Rate limit exceeded for {carrier}. Try again later",
                carrier,
                "RATE_LIMITED",
            )

    def record_request(self, carrier: str) -> None:
        self._tracker(carrier).requests.append(self._now_ms())

    def block_carrier(self, carrier: str) -> None:
        tracker = self._tracker(carrier)
        tracker.is_blocked = True
        tracker.block_until = self._now_ms() + self.cooldown_ms
        logger.warning(f"Blocking {carrier} API calls for {self.cooldown_ms // 1000}s after HTTP 429")

    def reset(self, carrier: str) -> None:
        self._trackers[carrier] = RateLimitTracker()

    def reset_all(self) -> None:
        self._trackers.clear()
