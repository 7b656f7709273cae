"""Backup store contract shared by the Drive and local-mirror backends.

Both backends lay data out the same way::

    <root>/
    +-- library/
    |   +-- catalog.json
    +-- backups/
        +-- <entity id>/
            +-- artifacts/<archive name>.zip
            +-- metadata/<snapshot id>.json
            +-- latest.json

``latest.json`` is overwritten on every upload and only after the
archive and metadata document are stored. Two devices uploading for the
same entity at the same moment can still lose one pointer update; there
is no cross-device locking.
"""

import logging
from abc import ABC, abstractmethod

from savesync.models import RemoteBackupRecord, SaveSnapshot

logger = logging.getLogger(__name__)

LIBRARY_FOLDER = "library"
BACKUPS_FOLDER = "backups"
ARTIFACTS_FOLDER = "artifacts"
METADATA_FOLDER = "metadata"
CATALOG_NAME = "catalog.json"
LATEST_NAME = "latest.json"


def metadata_name(snapshot_id: str) -> str:
    return f"{snapshot_id}.json"


class BackupStore(ABC):
    """Where snapshots and the catalog document travel."""

    def __init__(self, device_label: str):
        self.device_label = device_label

    @property
    @abstractmethod
    def name(self) -> str:
        """Human-readable backend name."""

    @abstractmethod
    def available(self) -> bool:
        """Whether this backend is configured and usable right now."""

    @abstractmethod
    def upload_snapshot(self, entity_id: str, snapshot: SaveSnapshot) -> RemoteBackupRecord:
        """Store archive, then metadata, then overwrite the latest pointer."""

    @abstractmethod
    def fetch_latest(self, entity_id: str) -> RemoteBackupRecord | None:
        """Return the entity's latest record, or None if never uploaded."""

    @abstractmethod
    def download_archive(self, record: RemoteBackupRecord, target_path: str) -> str:
        """Copy the record's archive to ``target_path``."""

    @abstractmethod
    def sync_catalog(self, document: dict):
        """Create or replace the catalog document."""

    @abstractmethod
    def load_catalog(self) -> dict | None:
        """Return the catalog document, or None if there is none."""

    def _base_metadata(self, entity_id: str, snapshot: SaveSnapshot) -> dict:
        return {
            "id": snapshot.id,
            "entity_id": entity_id,
            "created_at": snapshot.created_at,
            "archive_name": snapshot.archive_name,
            "fingerprint": snapshot.fingerprint,
            "size_bytes": snapshot.size_bytes,
            "device_label": self.device_label,
        }


def select_store(remote: BackupStore | None, local: BackupStore | None) -> BackupStore | None:
    """Remote when authenticated, else the local mirror, else nothing."""
    if remote is not None and remote.available():
        return remote
    if local is not None and local.available():
        return local
    return None
