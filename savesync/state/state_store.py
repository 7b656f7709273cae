"""Persistent application state.

The whole state (entities, watch roots, offline mirror directory,
remote credentials) lives in one JSON document that is read once,
mutated in memory and rewritten in full. All mutations go through
``StateStore.update`` which holds a single writer lock, so concurrent
API handlers cannot lose each other's updates.
"""

import json
import logging
import os
import tempfile
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable

from savesync.errors import NotFoundError, StorageIOError
from savesync.models import MonitoredEntity

logger = logging.getLogger(__name__)

STATE_FILENAME = "state.json"


@dataclass
class AppState:
    entities: list[MonitoredEntity] = field(default_factory=list)
    watch_roots: list[str] = field(default_factory=list)
    offline_backup_dir: str | None = None
    last_cloud_sync_at: str | None = None
    remote_credentials: dict | None = None

    def find_entity(self, entity_id: str) -> MonitoredEntity | None:
        for entity in self.entities:
            if entity.id == entity_id:
                return entity
        return None

    def get_entity(self, entity_id: str) -> MonitoredEntity:
        entity = self.find_entity(entity_id)
        if entity is None:
            raise NotFoundError(f"Entity not found: {entity_id}")
        return entity

    def to_dict(self) -> dict:
        return {
            "entities": [e.to_dict() for e in self.entities],
            "watch_roots": list(self.watch_roots),
            "offline_backup_dir": self.offline_backup_dir,
            "last_cloud_sync_at": self.last_cloud_sync_at,
            "remote_credentials": self.remote_credentials,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "AppState":
        entities = []
        for raw in data.get("entities") or []:
            try:
                entities.append(MonitoredEntity.from_dict(raw))
            except (KeyError, TypeError, ValueError) as exc:
                logger.warning("Dropping malformed entity record %r: %s", raw, exc)
        offline = data.get("offline_backup_dir")
        credentials = data.get("remote_credentials")
        return cls(
            entities=entities,
            watch_roots=[r for r in data.get("watch_roots") or [] if isinstance(r, str)],
            offline_backup_dir=offline if isinstance(offline, str) else None,
            last_cloud_sync_at=data.get("last_cloud_sync_at"),
            remote_credentials=credentials if isinstance(credentials, dict) else None,
        )


def write_json_atomic(path: Path, payload: dict):
    """Write JSON via a temp file in the same directory, then replace."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp = tempfile.mkstemp(dir=str(path.parent), prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            json.dump(payload, f, indent=2)
        os.replace(tmp, str(path))
    except BaseException:
        try:
            os.unlink(tmp)
        except OSError:
            pass
        raise


class StateStore:
    """Owns the in-memory ``AppState`` and its on-disk copy."""

    def __init__(self, data_dir: str):
        self.data_dir = Path(data_dir)
        self.state_path = self.data_dir / STATE_FILENAME
        self.temp_backup_dir = self.data_dir / "temp-backups"
        self.snapshot_dir = self.data_dir / "snapshots"
        self._lock = threading.RLock()
        self.state = AppState()

    @property
    def lock(self) -> threading.RLock:
        return self._lock

    def load(self) -> AppState:
        """Read state.json; a missing or corrupt file yields empty state."""
        with self._lock:
            try:
                raw = json.loads(self.state_path.read_text(encoding="utf-8"))
                self.state = AppState.from_dict(raw if isinstance(raw, dict) else {})
            except FileNotFoundError:
                self.state = AppState()
            except (json.JSONDecodeError, OSError) as exc:
                logger.warning("Could not read %s, starting empty: %s", self.state_path, exc)
                self.state = AppState()
            return self.state

    def save(self):
        with self._lock:
            try:
                write_json_atomic(self.state_path, self.state.to_dict())
            except OSError as exc:
                raise StorageIOError(f"Failed to write {self.state_path}: {exc}") from exc

    def update(self, mutate: Callable[[AppState], object]):
        """Apply ``mutate`` to the state and persist it, as one write."""
        with self._lock:
            result = mutate(self.state)
            self.save()
            return result

    def get_entity(self, entity_id: str) -> MonitoredEntity:
        with self._lock:
            return self.state.get_entity(entity_id)

    def entities(self) -> list[MonitoredEntity]:
        with self._lock:
            return list(self.state.entities)
