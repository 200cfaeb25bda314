from datetime import datetime
from typing import Literal

from pydantic import BaseModel, Field
from pydantic.alias_generators import to_camel

from tracksync.models.shipment import Carrier, ShipmentStatus

SyncTrigger = Literal["scheduled", "on_demand", "manual"]


class SyncResult(BaseModel):
    shipment_id: str
    success: bool
    skipped: bool = False
    events_added: int = 0
    status_updated: bool = False
    new_status: ShipmentStatus | None = None
    rejected_transition: str | None = None
    error: str | None = None
    next_retry_after: datetime | None = None
    carrier: Carrier | None = None
    tracking_number: str | None = None
    last_sync: datetime | None = None

    model_config = {"alias_generator": to_camel, "populate_by_name": True}


class SyncSummary(BaseModel):
    trigger: SyncTrigger = "scheduled"
    total_shipments: int = 0
    successful: int = 0
    failed: int = 0
    skipped: int = 0
    results: list[SyncResult] = Field(default_factory=list)
    started_at: datetime
    completed_at: datetime | None = None
    duration_ms: int | None = None

    model_config = {"alias_generator": to_camel, "populate_by_name": True}

    def add(self, result: SyncResult) -> None:
        self.results.append(result)
        if result.skipped:
            self.skipped += 1
        elif result.success:
            self.successful += 1
        else:
            self.failed += 1

    def finish(self, completed_at: datetime) -> "SyncSummary":
        self.completed_at = completed_at
        self.duration_ms = int((completed_at - self.started_at).total_seconds() * 1000)
        return self

    def message(self) -> str:
        return (
            f"Sync completed. {self.successful} successful, "
            f"{self.failed} failed, {self.skipped} skipped."
        )
