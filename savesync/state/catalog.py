"""Cross-device catalog document: serialization, merge and reconnect.

The catalog is the durable record of every entity shared through the
backup store. Volatile fields (running flag, session start) and the
device-local ``latest_local_save`` are never written to it.
"""

import logging
from datetime import datetime, timezone

from savesync.errors import SaveSyncError
from savesync.events import EventChannel
from savesync.models import MonitoredEntity
from savesync.state.state_store import AppState, StateStore
from savesync.storage.backup_store import BackupStore

logger = logging.getLogger(__name__)


def serialize_catalog(state: AppState, app_name: str, device_label: str) -> dict:
    entities = []
    for entity in state.entities:
        record = entity.to_dict()
        record["currently_running"] = False
        record["session_started_at"] = None
        record["latest_local_save"] = None
        entities.append(record)
    return {
        "app_name": app_name,
        "updated_at": datetime.now(timezone.utc).isoformat(),
        "device_label": device_label,
        "watch_roots": list(state.watch_roots),
        "entities": entities,
    }


def merge_catalog(state: AppState, document: dict | None):
    """Replace entities and watch roots with the document's, in place.

    Each entity keeps the ``latest_local_save`` it already has in memory:
    a catalog from another device never carries one, and must not erase
    a fresher local snapshot.
    """
    if not document:
        return
    local_saves = {e.id: e.latest_local_save for e in state.entities}

    roots = document.get("watch_roots")
    if isinstance(roots, list):
        state.watch_roots = [r for r in roots if isinstance(r, str)]

    records = document.get("entities")
    if isinstance(records, list):
        merged = []
        for raw in records:
            try:
                entity = MonitoredEntity.from_dict(raw)
            except (KeyError, TypeError, ValueError) as exc:
                logger.warning("Skipping malformed catalog entry %r: %s", raw, exc)
                continue
            if local_saves.get(entity.id) is not None:
                entity.latest_local_save = local_saves[entity.id]
            merged.append(entity)
        state.entities = merged


def catalog_has_content(document: dict | None) -> bool:
    if not document:
        return False
    return bool(document.get("entities") or document.get("watch_roots"))


class CatalogSynchronizer:
    """Publishes the catalog to stores and merges it back on reconnect."""

    def __init__(self, state_store: StateStore, events: EventChannel,
                 app_name: str, device_label: str):
        self.state_store = state_store
        self.events = events
        self.app_name = app_name
        self.device_label = device_label

    def document(self) -> dict:
        with self.state_store.lock:
            return serialize_catalog(self.state_store.state, self.app_name, self.device_label)

    def publish(self, stores: list[BackupStore]) -> str | None:
        """Write the current catalog to each store; returns the sync time."""
        if not stores:
            return None
        document = self.document()
        for store in stores:
            store.sync_catalog(document)
            logger.debug("Catalog published to %s", store.name)
        return document["updated_at"]

    def reconnect(self, store: BackupStore) -> bool:
        """Load the store's catalog into memory, or seed it if empty.

        Returns True when a catalog was merged in.
        """
        document = store.load_catalog()
        merged = catalog_has_content(document)
        if merged:
            self.state_store.update(lambda state: merge_catalog(state, document))
            self.events.info(f"Catalog loaded from {store.name}.")
        else:
            store.sync_catalog(self.document())
            self.events.info(f"Created the initial catalog on {store.name}.")

        self.refresh_remote_records(store)
        return merged

    def refresh_remote_records(self, store: BackupStore):
        """Pull each entity's latest backup record; failures keep the old one."""
        updates = {}
        for entity in self.state_store.entities():
            try:
                record = store.fetch_latest(entity.id)
            except SaveSyncError as exc:
                logger.warning("Could not refresh latest backup for %s: %s", entity.id, exc)
                continue
            if record is not None:
                updates[entity.id] = record

        def apply(state: AppState):
            for entity in state.entities:
                if entity.id in updates:
                    entity.latest_remote_save = updates[entity.id]

        self.state_store.update(apply)
