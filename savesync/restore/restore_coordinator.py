"""Replace a live save directory with the latest backed-up snapshot.

Each attempt gets its own scratch workspace under the temp-backups
root::

    temp-backups/
    +-- <entity id>-<uuid>/
        +-- local-backup/      verbatim copy of the live directory
        +-- remote-save.zip    downloaded archive

The safety copy is complete before anything is downloaded. If the
download or extraction fails the live directory is emptied and the
safety copy put back, so a failed restore leaves the original save
byte-identical. Workspaces are left behind for inspection and removed
later by the retention sweep.
"""

import logging
import os
import shutil
import uuid
import zipfile
from datetime import datetime, timezone
from pathlib import Path

from savesync.errors import (
    PreconditionError,
    RestoreRollbackError,
    StorageIOError,
)
from savesync.events import EventChannel
from savesync.locks import EntityLocks
from savesync.models import RemoteBackupRecord, RestoreResult
from savesync.process.process_oracle import ProcessOracle
from savesync.state.state_store import StateStore
from savesync.storage.backup_store import BackupStore

logger = logging.getLogger(__name__)

SAFETY_DIRNAME = "local-backup"
ARCHIVE_FILENAME = "remote-save.zip"


def empty_directory(target: Path):
    target.mkdir(parents=True, exist_ok=True)
    for entry in target.iterdir():
        if entry.is_dir() and not entry.is_symlink():
            shutil.rmtree(entry)
        else:
            entry.unlink()


def copy_contents(source: Path, dest: Path):
    """Copy every entry of ``source`` into ``dest`` preserving metadata."""
    dest.mkdir(parents=True, exist_ok=True)
    for entry in source.iterdir():
        target = dest / entry.name
        if entry.is_dir() and not entry.is_symlink():
            shutil.copytree(entry, target, symlinks=True, dirs_exist_ok=True)
        else:
            shutil.copy2(entry, target, follow_symlinks=False)


def verify_archive(archive_path: Path):
    try:
        with zipfile.ZipFile(archive_path) as zf:
            bad = zf.testzip()
    except (zipfile.BadZipFile, OSError) as exc:
        raise StorageIOError(f"Downloaded archive is unreadable: {exc}") from exc
    if bad is not None:
        raise StorageIOError(f"Downloaded archive is corrupt at {bad}")


def extract_archive(archive_path: Path, dest: Path):
    """Extract refusing any member that would land outside ``dest``."""
    root = os.path.realpath(dest)
    try:
        with zipfile.ZipFile(archive_path) as zf:
            for member in zf.infolist():
                target = os.path.realpath(os.path.join(root, member.filename))
                if target != root and not target.startswith(root + os.sep):
                    raise StorageIOError(f"Archive member escapes save directory: {member.filename}")
            zf.extractall(root)
    except (zipfile.BadZipFile, OSError) as exc:
        raise StorageIOError(f"Extraction into {dest} failed: {exc}") from exc


class RestoreCoordinator:
    """Runs the restore protocol under the entity's lock."""

    def __init__(
        self,
        state_store: StateStore,
        oracle: ProcessOracle,
        locks: EntityLocks,
        events: EventChannel,
        temp_root: str | None = None,
    ):
        self.state_store = state_store
        self.oracle = oracle
        self.locks = locks
        self.events = events
        self.temp_root = Path(temp_root) if temp_root else state_store.temp_backup_dir

    def _resolve_record(self, entity_id: str, store: BackupStore) -> RemoteBackupRecord:
        """Ask the store first; the cached record may belong to another backend."""
        entity = self.state_store.get_entity(entity_id)
        record = store.fetch_latest(entity_id)
        if record is None:
            record = entity.latest_remote_save
        if record is None:
            raise PreconditionError(f"There is no backup of {entity.title} to restore.")
        return record

    def restore_latest(self, entity_id: str, store: BackupStore | None) -> RestoreResult:
        if store is None:
            raise PreconditionError("No backup store is configured.")

        entity = self.state_store.get_entity(entity_id)
        with self.locks.hold(entity_id):
            record = self._resolve_record(entity_id, store)
            if self.oracle.is_running(entity.process_name):
                raise PreconditionError(
                    f"Close {entity.process_name} before restoring the save."
                )
            return self._restore(entity.id, entity.title, Path(entity.watch_root), record, store)

    def _restore(self, entity_id: str, title: str, live: Path,
                 record: RemoteBackupRecord, store: BackupStore) -> RestoreResult:
        workspace = self.temp_root / f"{entity_id}-{uuid.uuid4()}"
        archive_path = workspace / ARCHIVE_FILENAME
        safety_dir = workspace / SAFETY_DIRNAME

        had_live = live.is_dir()
        try:
            workspace.mkdir(parents=True, exist_ok=False)
            if had_live:
                shutil.copytree(live, safety_dir, symlinks=True)
        except OSError as exc:
            raise StorageIOError(f"Could not make a safety copy of {live}: {exc}") from exc
        logger.info("Restore workspace for %s: %s (safety copy: %s)",
                    entity_id, workspace, had_live)

        try:
            store.download_archive(record, str(archive_path))
            verify_archive(archive_path)
            empty_directory(live)
            extract_archive(archive_path, live)
        except Exception as exc:
            logger.error("Restore of %s failed: %s", entity_id, exc)
            if had_live:
                try:
                    empty_directory(live)
                    copy_contents(safety_dir, live)
                except OSError as rollback_exc:
                    logger.critical("Rollback of %s failed, safety copy kept at %s",
                                    entity_id, safety_dir)
                    raise RestoreRollbackError(exc, rollback_exc) from exc
                logger.info("Rolled back %s from %s", entity_id, safety_dir)
            raise

        restored_at = datetime.now(timezone.utc).isoformat()
        self.events.info(f"Backup {record.id} restored for {title}.", entity_id)
        return RestoreResult(restored_at=restored_at, workspace=str(workspace))
