import logging
from datetime import datetime, timezone

from tracksync.models.shipment import Shipment, as_utc
from tracksync.storage import database

logger = logging.getLogger(__name__)

# Allowed edges only. Forward skips are fine since carriers often omit scans;
# leaving a terminal status is never allowed.
TRANSITIONS: dict[str, frozenset[str]] = {
    "pending": frozenset({"in-transit", "out-for-delivery", "delivered", "exception", "cancelled"}),
    "in-transit": frozenset({"out-for-delivery", "delivered", "exception", "cancelled"}),
    "out-for-delivery": frozenset({"in-transit", "delivered", "exception", "cancelled"}),
    "exception": frozenset({"in-transit", "out-for-delivery", "delivered", "cancelled"}),
    "delivered": frozenset(),
    "cancelled": frozenset(),
}


class InvalidStatusTransition(Exception):
    def __init__(self, current: str, new: str):
        super().__init__(f"Invalid status transition from {current} to {new}")
        self.current = current
        self.new = new


def can_transition(current: str, new: str) -> bool:
    return new in TRANSITIONS.get(current, frozenset())


def validate_transition(current: str, new: str) -> None:
    if not can_transition(current, new):
        raise InvalidStatusTransition(current, new)


def apply_transition(shipment: Shipment, new_status: str, at: datetime | None = None) -> Shipment:
    """Move a shipment to a new status and persist it.

    Raises InvalidStatusTransition for edges outside TRANSITIONS. The shipment
    is left untouched in that case.
    """
    validate_transition(shipment.status, new_status)

    now = datetime.now(timezone.utc)
    before = shipment.model_copy()
    shipment.status = new_status
    shipment.updated_at = now
    if new_status == "delivered":
        shipment.delivered_at = as_utc(at) if at else now

    try:
        database.save("shipments", shipment)
    except Exception:
        # Keep the in-memory copy in line with what is stored
        shipment.status = before.status
        shipment.updated_at = before.updated_at
        shipment.delivered_at = before.delivered_at
        raise

    logger.info(f"Shipment {shipment.id} status {before.status} -> {new_status}")
    return shipment
