import logging
from datetime import datetime, timedelta, timezone

from pydantic import BaseModel, Field
from pydantic.alias_generators import to_camel

from tracksync.config import settings
from tracksync.models.shipment import Shipment, as_utc
from tracksync.services.carriers.factory import adapter_factory
from tracksync.services.sync import is_due
from tracksync.storage import database

logger = logging.getLogger(__name__)

MAX_FAILURE_RATE_PERCENT = 10.0


class HealthModel(BaseModel):
    model_config = {"alias_generator": to_camel, "populate_by_name": True}


class HealthChecks(HealthModel):
    carrier_api: bool = False
    recent_sync_activity: bool = False
    stale_shipments: bool = True
    failure_rate: bool = True


class HealthMetrics(HealthModel):
    total_shipments: int = 0
    active_shipments: int = 0
    due_shipments: int = 0
    needs_review: int = 0
    failed_shipments: int = 0
    last_sync_time: datetime | None = None
    recent_sync_count: int = 0
    stale_shipment_count: int = 0
    failure_rate_percent: float = 0.0


class HealthStatus(HealthModel):
    status: str = "healthy"
    timestamp: datetime
    checks: HealthChecks = Field(default_factory=HealthChecks)
    metrics: HealthMetrics = Field(default_factory=HealthMetrics)
    carriers: dict[str, bool] = Field(default_factory=dict)
    alerts: list[str] = Field(default_factory=list)
    recommendations: list[str] = Field(default_factory=list)


def sync_health(now: datetime | None = None, alert_threshold_hours: int | None = None) -> HealthStatus:
    """Summarize how well carrier sync is keeping up."""
    now = as_utc(now or datetime.now(timezone.utc))
    threshold = now - timedelta(hours=alert_threshold_hours or settings.health_alert_threshold_hours)
    report = HealthStatus(timestamp=now)

    report.carriers = adapter_factory.check_all_availability()
    report.checks.carrier_api = any(report.carriers.values())
    if not report.checks.carrier_api:
        report.alerts.append("No carrier API is configured or available")
        report.recommendations.append("Check carrier API credentials and network connectivity")

    shipments = database.load_all("shipments", Shipment)
    active = [s for s in shipments if s.is_eligible]
    synced = [as_utc(s.last_api_sync) for s in shipments if s.last_api_sync]
    recent = [s for s in active if s.last_api_sync and as_utc(s.last_api_sync) >= threshold]
    failed = [s for s in active if s.api_sync_status == "failed"]

    metrics = report.metrics
    metrics.total_shipments = len(shipments)
    metrics.active_shipments = len(active)
    metrics.due_shipments = sum(1 for s in active if is_due(s, now))
    metrics.needs_review = sum(1 for s in shipments if s.needs_review)
    metrics.failed_shipments = len(failed)
    metrics.last_sync_time = max(synced) if synced else None
    metrics.recent_sync_count = len(recent)
    metrics.stale_shipment_count = sum(
        1 for s in active if s.last_api_sync is None or as_utc(s.last_api_sync) < threshold
    )

    attempted = [s for s in active if s.last_api_sync]
    metrics.failure_rate_percent = (len(failed) / len(attempted) * 100) if attempted else 0.0

    report.checks.recent_sync_activity = not active or (
        metrics.last_sync_time is not None and metrics.last_sync_time >= threshold
    )
    if not report.checks.recent_sync_activity:
        last = metrics.last_sync_time.isoformat() if metrics.last_sync_time else "never"
        report.alerts.append(f"No recent sync activity (last sync: {last})")
        report.recommendations.append("Check that the sync scheduler is running")

    report.checks.stale_shipments = metrics.stale_shipment_count == 0
    if not report.checks.stale_shipments:
        report.alerts.append(f"{metrics.stale_shipment_count} shipments haven't been synced recently")
        report.recommendations.append("Run a full resync or check for carrier API issues")

    report.checks.failure_rate = metrics.failure_rate_percent < MAX_FAILURE_RATE_PERCENT
    if not report.checks.failure_rate:
        report.alerts.append(f"High sync failure rate: {metrics.failure_rate_percent:.1f}%")
        report.recommendations.append("Review shipments flagged for review and recent API errors")

    if not report.checks.carrier_api:
        report.status = "critical"
    elif report.alerts:
        report.status = "warning"

    logger.info(f"Sync health check: {report.status} ({len(report.alerts)} alerts)")
    return report
