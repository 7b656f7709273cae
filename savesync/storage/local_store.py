"""Local mirror backend: the backup layout under a user-chosen directory.

Used when no Drive session exists, e.g. a USB drive or NAS share.
Everything is written synchronously on each call.
"""

import json
import logging
import shutil
from pathlib import Path

from savesync.errors import NotFoundError, StorageIOError
from savesync.models import RemoteBackupRecord, SaveSnapshot
from savesync.state.state_store import write_json_atomic
from savesync.storage.backup_store import (
    ARTIFACTS_FOLDER,
    BACKUPS_FOLDER,
    CATALOG_NAME,
    LATEST_NAME,
    LIBRARY_FOLDER,
    METADATA_FOLDER,
    BackupStore,
    metadata_name,
)

logger = logging.getLogger(__name__)


class LocalMirrorStore(BackupStore):

    def __init__(self, root: str, device_label: str):
        super().__init__(device_label)
        self.root = Path(root)

    @property
    def name(self) -> str:
        return "local mirror"

    def available(self) -> bool:
        # Constructed only once the user has picked a mirror directory
        return True

    def _entity_dir(self, entity_id: str) -> Path:
        return self.root / BACKUPS_FOLDER / entity_id

    @property
    def catalog_path(self) -> Path:
        return self.root / LIBRARY_FOLDER / CATALOG_NAME

    def upload_snapshot(self, entity_id: str, snapshot: SaveSnapshot) -> RemoteBackupRecord:
        entity_dir = self._entity_dir(entity_id)
        artifact = entity_dir / ARTIFACTS_FOLDER / snapshot.archive_name
        meta_path = entity_dir / METADATA_FOLDER / metadata_name(snapshot.id)

        try:
            artifact.parent.mkdir(parents=True, exist_ok=True)
            shutil.copy2(snapshot.archive_path, str(artifact))

            metadata = self._base_metadata(entity_id, snapshot)
            metadata["artifact_ref"] = str(artifact)
            metadata["metadata_ref"] = str(meta_path)
            write_json_atomic(meta_path, metadata)

            write_json_atomic(entity_dir / LATEST_NAME, metadata)
        except OSError as exc:
            raise StorageIOError(
                f"Local mirror upload failed for {entity_id}: {exc}"
            ) from exc

        logger.info("Snapshot %s mirrored to %s", snapshot.id, artifact)
        return RemoteBackupRecord.from_dict(metadata)

    def fetch_latest(self, entity_id: str) -> RemoteBackupRecord | None:
        payload = self._read_json(self._entity_dir(entity_id) / LATEST_NAME)
        return RemoteBackupRecord.from_dict(payload)

    def download_archive(self, record: RemoteBackupRecord, target_path: str) -> str:
        source = self._entity_dir(record.entity_id) / ARTIFACTS_FOLDER / record.archive_name
        if record.artifact_ref and Path(record.artifact_ref).is_file():
            source = Path(record.artifact_ref)
        if not source.is_file():
            raise NotFoundError(f"Backup archive missing from local mirror: {source}")
        try:
            Path(target_path).parent.mkdir(parents=True, exist_ok=True)
            shutil.copy2(str(source), target_path)
        except OSError as exc:
            raise StorageIOError(f"Could not copy {source}: {exc}") from exc
        return target_path

    def sync_catalog(self, document: dict):
        try:
            write_json_atomic(self.catalog_path, document)
        except OSError as exc:
            raise StorageIOError(f"Could not write {self.catalog_path}: {exc}") from exc

    def load_catalog(self) -> dict | None:
        return self._read_json(self.catalog_path)

    @staticmethod
    def _read_json(path: Path) -> dict | None:
        try:
            payload = json.loads(path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return None
        except (json.JSONDecodeError, OSError) as exc:
            logger.warning("Unreadable document %s: %s", path, exc)
            return None
        return payload if isinstance(payload, dict) else None
