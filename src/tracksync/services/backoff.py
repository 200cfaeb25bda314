"""
Retry pacing for shipments whose carrier sync keeps failing.

The wait before the next attempt depends on how long the shipment has been
failing (last_api_sync - failing_since): the first tier longer than that
streak, capped at the last tier. Successive failures therefore wait
5m, 15m, 45m, 2h and then 6h for good.
"""

from datetime import datetime, timedelta

from tracksync.models.shipment import Shipment, as_utc

BACKOFF_TIERS: tuple[timedelta, ...] = (
    timedelta(minutes=5),
    timedelta(minutes=15),
    timedelta(minutes=45),
    timedelta(hours=2),
    timedelta(hours=6),
)


def backoff_period(failing_for: timedelta) -> timedelta:
    for tier in BACKOFF_TIERS:
        if failing_for < tier:
            return tier
    return BACKOFF_TIERS[-1]


def failing_duration(shipment: Shipment) -> timedelta:
    if shipment.last_api_sync is None or shipment.failing_since is None:
        return timedelta(0)
    return max(as_utc(shipment.last_api_sync) - as_utc(shipment.failing_since), timedelta(0))


def next_retry_after(shipment: Shipment) -> datetime | None:
    """Earliest time a failed shipment may be synced again."""
    if shipment.api_sync_status != "failed" or shipment.last_api_sync is None:
        return None
    return as_utc(shipment.last_api_sync) + backoff_period(failing_duration(shipment))


def in_backoff(shipment: Shipment, now: datetime) -> bool:
    retry_at = next_retry_after(shipment)
    return retry_at is not None and as_utc(now) < retry_at
