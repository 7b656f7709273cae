"""SQLite history of sync events published by the pipeline."""

import json
import sqlite3
import threading
import logging
from pathlib import Path

from savesync.models import SyncEvent

logger = logging.getLogger(__name__)


class EventLogger:
    """Thread-safe SQLite logger for ``SyncEvent`` records.

    Subscribe ``log_event`` to the event channel to keep a history the
    dashboard can page through.
    """

    def __init__(self, db_path: str):
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._local = threading.local()
        self._init_db()

    def _get_connection(self) -> sqlite3.Connection:
        if not hasattr(self._local, "connection") or self._local.connection is None:
            self._local.connection = sqlite3.connect(
                str(self.db_path), timeout=10
            )
            self._local.connection.row_factory = sqlite3.Row
            self._local.connection.execute("PRAGMA journal_mode=WAL")
            self._local.connection.execute("PRAGMA synchronous=NORMAL")
        return self._local.connection

    def _init_db(self):
        conn = self._get_connection()
        conn.executescript("""
            CREATE TABLE IF NOT EXISTS sync_events (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                timestamp TEXT NOT NULL,
                kind TEXT NOT NULL,
                entity_id TEXT,
                message TEXT NOT NULL,
                snapshot_id TEXT,
                snapshot_json TEXT
            );

            CREATE INDEX IF NOT EXISTS idx_sync_events_timestamp
                ON sync_events(timestamp);
            CREATE INDEX IF NOT EXISTS idx_sync_events_kind
                ON sync_events(kind);
            CREATE INDEX IF NOT EXISTS idx_sync_events_entity
                ON sync_events(entity_id);
        """)
        conn.commit()
        logger.info("Event history initialized at %s", self.db_path)

    def log_event(self, event: SyncEvent) -> int:
        """Insert an event record. Returns the row ID."""
        snapshot = event.snapshot
        conn = self._get_connection()
        cursor = conn.execute(
            """
            INSERT INTO sync_events (
                timestamp, kind, entity_id, message, snapshot_id, snapshot_json
            ) VALUES (?, ?, ?, ?, ?, ?)
            """,
            (
                event.timestamp,
                event.kind,
                event.entity_id,
                event.message,
                snapshot.id if snapshot else None,
                json.dumps(snapshot.to_dict()) if snapshot else None,
            ),
        )
        conn.commit()
        return cursor.lastrowid

    def get_events(
        self,
        since: str = None,
        kind: str = None,
        entity_id: str = None,
        limit: int = 100,
    ) -> list[dict]:
        """Query events with optional filters, newest first."""
        conn = self._get_connection()
        query = "SELECT * FROM sync_events WHERE 1=1"
        params = []

        if since:
            query += " AND timestamp >= ?"
            params.append(since)
        if kind:
            query += " AND kind = ?"
            params.append(kind)
        if entity_id:
            query += " AND entity_id = ?"
            params.append(entity_id)

        query += " ORDER BY timestamp DESC, id DESC LIMIT ?"
        params.append(limit)

        rows = conn.execute(query, params).fetchall()
        events = []
        for row in rows:
            record = dict(row)
            raw = record.pop("snapshot_json")
            record["snapshot"] = json.loads(raw) if raw else None
            events.append(record)
        return events

    def close(self):
        if hasattr(self._local, "connection") and self._local.connection:
            self._local.connection.close()
            self._local.connection = None
