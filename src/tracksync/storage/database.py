import json
import sqlite3
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import TypeVar

from pydantic import BaseModel

from tracksync.config import settings
from tracksync.models.shipment import Shipment, TrackingEvent, as_utc

T = TypeVar("T", bound=BaseModel)


def get_db_path() -> Path:
    return Path(settings.data_dir) / "tracksync.db"


def init_db() -> None:
    """Initialize database with required tables."""
    with get_connection() as conn:
        conn.execute("""
            CREATE TABLE IF NOT EXISTS shipments (
                id TEXT PRIMARY KEY,
                data JSON NOT NULL,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
        """)
        conn.execute("""
            CREATE TABLE IF NOT EXISTS tracking_events (
                id TEXT PRIMARY KEY,
                shipment_id TEXT NOT NULL,
                source TEXT NOT NULL,
                event_time TEXT NOT NULL,
                data JSON NOT NULL,
                recorded_at TEXT NOT NULL
            )
        """)
        conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_tracking_events_shipment
            ON tracking_events (shipment_id, source, event_time)
        """)
        conn.commit()


@contextmanager
def get_connection():
    """Get a database connection."""
    db_path = get_db_path()
    db_path.parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(db_path)
    conn.row_factory = sqlite3.Row
    try:
        yield conn
    finally:
        conn.close()


def _iso(value: datetime) -> str:
    # Fixed-width UTC so that ORDER BY on the text column is chronological
    return as_utc(value).strftime("%Y-%m-%dT%H:%M:%S.%fZ")


def save(table: str, model: BaseModel) -> None:
    """Save a Pydantic model to the database."""
    now = datetime.now(timezone.utc).isoformat()
    data = model.model_dump(mode="json")
    model_id = data.get("id")

    with get_connection() as conn:
        existing = conn.execute(
            f"SELECT id FROM {table} WHERE id = ?", (model_id,)
        ).fetchone()

        if existing:
            conn.execute(
                f"UPDATE {table} SET data = ?, updated_at = ? WHERE id = ?",
                (json.dumps(data), now, model_id),
            )
        else:
            conn.execute(
                f"INSERT INTO {table} (id, data, created_at, updated_at) VALUES (?, ?, ?, ?)",
                (model_id, json.dumps(data), now, now),
            )
        conn.commit()


def load(table: str, model_id: str, model_class: type[T]) -> T | None:
    """Load a model by ID."""
    with get_connection() as conn:
        row = conn.execute(
            f"SELECT data FROM {table} WHERE id = ?", (model_id,)
        ).fetchone()
        if row:
            return model_class.model_validate_json(row["data"])
        return None


def load_all(table: str, model_class: type[T]) -> list[T]:
    """Load all models from a table, oldest first."""
    with get_connection() as conn:
        rows = conn.execute(f"SELECT data FROM {table} ORDER BY created_at ASC").fetchall()
        return [model_class.model_validate_json(row["data"]) for row in rows]


def delete(table: str, model_id: str) -> bool:
    """Delete a model by ID."""
    with get_connection() as conn:
        cursor = conn.execute(f"DELETE FROM {table} WHERE id = ?", (model_id,))
        if table == "shipments":
            conn.execute("DELETE FROM tracking_events WHERE shipment_id = ?", (model_id,))
        conn.commit()
        return cursor.rowcount > 0


def update_sync_fields(shipment: Shipment) -> None:
    """Persist a shipment after its sync status fields changed."""
    shipment.updated_at = datetime.now(timezone.utc)
    save("shipments", shipment)


def find_shipment_by_tracking_number(tracking_number: str) -> Shipment | None:
    """Find a shipment by its carrier tracking number."""
    for shipment in load_all("shipments", Shipment):
        if shipment.carrier_tracking_number == tracking_number:
            return shipment
    return None


def insert_event(event: TrackingEvent) -> None:
    """Append a tracking event. Events are never updated."""
    if not event.shipment_id:
        raise ValueError("Tracking event has no shipment_id")

    data = event.model_dump(mode="json")
    with get_connection() as conn:
        conn.execute(
            """
            INSERT INTO tracking_events (id, shipment_id, source, event_time, data, recorded_at)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            (
                event.id,
                event.shipment_id,
                event.source,
                _iso(event.event_time),
                json.dumps(data),
                _iso(event.recorded_at),
            ),
        )
        conn.commit()


def load_events(shipment_id: str, source: str | None = None) -> list[TrackingEvent]:
    """Load a shipment's events in event_time order, optionally for one source."""
    query = "SELECT data FROM tracking_events WHERE shipment_id = ?"
    params: tuple = (shipment_id,)
    if source:
        query += " AND source = ?"
        params = (shipment_id, source)
    query += " ORDER BY event_time ASC, recorded_at ASC"

    with get_connection() as conn:
        rows = conn.execute(query, params).fetchall()
        return [TrackingEvent.model_validate_json(row["data"]) for row in rows]
