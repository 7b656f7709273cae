"""Save sync orchestration.

Wires the pieces together and exposes the operations the dashboard
API calls:

    file mutation -> SaveWatcher -> CaptureScheduler (settle, process gate)
        -> archive_builder -> handle_snapshot_captured
        -> BackupStore upload (Drive if authenticated, else local mirror)
        -> state + catalog update -> events

Restore runs independently through RestoreCoordinator. Both hold the
entity's lock from ``EntityLocks``.
"""

import json
import logging
import re
import threading
from datetime import datetime, timezone

from savesync.capture.capture_scheduler import CaptureScheduler
from savesync.config import process_poll_interval_seconds, resolve_path
from savesync.errors import PreconditionError, SaveSyncError
from savesync.events import EventChannel
from savesync.locks import EntityLocks
from savesync.models import MATCH_EVERYTHING, MonitoredEntity, RestoreResult, SaveSnapshot
from savesync.monitor.save_watcher import SaveWatcher
from savesync.process.process_oracle import ProcessOracle, lookup_name
from savesync.process.session_poller import SessionPoller
from savesync.restore.restore_coordinator import RestoreCoordinator
from savesync.restore.retention import SweepReport, sweep_scratch_workspaces
from savesync.state.catalog import CatalogSynchronizer, catalog_has_content, merge_catalog
from savesync.state.state_store import AppState, StateStore
from savesync.storage.backup_store import BackupStore, select_store
from savesync.storage.drive_store import DriveBackupStore
from savesync.storage.local_store import LocalMirrorStore

logger = logging.getLogger(__name__)

EDITABLE_FIELDS = ("title", "watch_root", "process_name", "executable_path", "file_patterns")


def slugify(value: str) -> str:
    return re.sub(r"[^a-z0-9]+", "-", value.lower()).strip("-")


class SyncService:
    """Owns the application state and every pipeline component."""

    def __init__(
        self,
        config: dict,
        state_store: StateStore | None = None,
        oracle: ProcessOracle | None = None,
        drive_store: BackupStore | None = None,
        events: EventChannel | None = None,
        timer_factory=threading.Timer,
    ):
        self.config = config
        self.app_name = config["app_name"]
        self.device_label = config["device_label"]
        self.events = events or EventChannel()
        self.state_store = state_store or StateStore(config["data_dir"])
        self.oracle = oracle or ProcessOracle()
        self.locks = EntityLocks()
        self.drive_store = drive_store

        sync_cfg = config["sync"]
        self.catalog = CatalogSynchronizer(
            self.state_store, self.events, self.app_name, self.device_label,
        )
        self.scheduler = CaptureScheduler(
            state_store=self.state_store,
            oracle=self.oracle,
            locks=self.locks,
            events=self.events,
            snapshot_dir=str(self.state_store.snapshot_dir),
            on_snapshot=self.handle_snapshot_captured,
            settle_window=sync_cfg["settle_window_ms"] / 1000.0,
            timer_factory=timer_factory,
        )
        self.watcher = SaveWatcher(
            on_mutation=self.scheduler.queue_capture,
            events=self.events,
            stability_threshold=sync_cfg["stability_threshold_ms"] / 1000.0,
            stability_poll=sync_cfg["stability_poll_ms"] / 1000.0,
        )
        self.poller = SessionPoller(
            self.state_store, self.oracle, process_poll_interval_seconds(config),
        )
        self.restorer = RestoreCoordinator(
            self.state_store, self.oracle, self.locks, self.events,
        )

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def startup(self) -> SweepReport:
        """Load state, sweep stale restore workspaces, start the poller."""
        state = self.state_store.load()
        token_info = state.remote_credentials or self._read_token_file()
        if self.drive_store is None and token_info:
            try:
                self.drive_store = DriveBackupStore.from_token_info(
                    token_info,
                    self.device_label,
                    self.config["drive"]["root_folder_name"],
                )
            except ValueError as exc:
                logger.warning("Stored Drive credentials are unusable: %s", exc)
        if self.remote_authenticated():
            self.catalog.refresh_remote_records(self.drive_store)

        report = sweep_scratch_workspaces(
            str(self.state_store.temp_backup_dir),
            self.config["retention"]["temp_backup_days"],
        )
        self.poller.start()
        return report

    def _read_token_file(self) -> dict | None:
        """Authorized-user JSON written by an external OAuth flow, if configured."""
        token_path = self.config["drive"].get("token_path")
        if not token_path:
            return None
        try:
            with open(resolve_path(token_path), encoding="utf-8") as f:
                return json.load(f)
        except FileNotFoundError:
            return None
        except (OSError, json.JSONDecodeError) as exc:
            logger.warning("Could not read Drive token %s: %s", token_path, exc)
            return None

    def start_monitoring(self) -> int:
        return self.watcher.start(self.state_store.entities())

    def _rewatch(self):
        if self.watcher.running:
            self.watcher.start(self.state_store.entities())

    def stop(self):
        self.scheduler.cancel_all()
        self.watcher.stop()
        self.poller.stop()

    # ------------------------------------------------------------------
    # Stores
    # ------------------------------------------------------------------

    @property
    def local_store(self) -> LocalMirrorStore | None:
        directory = self.state_store.state.offline_backup_dir
        if not directory:
            return None
        return LocalMirrorStore(directory, self.device_label)

    def remote_authenticated(self) -> bool:
        return self.drive_store is not None and self.drive_store.available()

    def active_store(self) -> BackupStore | None:
        return select_store(self.drive_store, self.local_store)

    def persist(self, sync_cloud: bool = False):
        """Save state and publish the catalog to the configured stores."""
        self.state_store.save()
        local = self.local_store
        if local is not None:
            self._publish_catalog(local)
        if sync_cloud and self.remote_authenticated():
            synced_at = self._publish_catalog(self.drive_store)
            if synced_at is None:
                return

            def mark(state: AppState):
                state.last_cloud_sync_at = synced_at

            self.state_store.update(mark)

    def _publish_catalog(self, store: BackupStore) -> str | None:
        try:
            return self.catalog.publish([store])
        except SaveSyncError as exc:
            logger.warning("Catalog publish to %s failed: %s", store.name, exc)
            self.events.warning(f"Could not update the catalog on {store.name}: {exc}")
            return None

    # ------------------------------------------------------------------
    # Capture
    # ------------------------------------------------------------------

    def handle_snapshot_captured(self, entity: MonitoredEntity, snapshot: SaveSnapshot):
        """Record a new local snapshot and push it to the selected store."""
        def set_local(state: AppState):
            state.get_entity(entity.id).latest_local_save = snapshot

        self.state_store.update(set_local)

        store = self.active_store()
        if store is None:
            self.events.warning(
                f"New save detected for {entity.title}, but neither Google Drive "
                "nor a local backup folder is configured.",
                entity.id,
            )
            return None

        record = store.upload_snapshot(entity.id, snapshot)

        def set_remote(state: AppState):
            state.get_entity(entity.id).latest_remote_save = record

        self.state_store.update(set_remote)
        self.events.info(f"Backup saved to {store.name} for {entity.title}.", entity.id)
        self.persist(sync_cloud=self.remote_authenticated())
        return record

    def capture_now(self, entity_id: str) -> SaveSnapshot:
        snapshot = self.scheduler.capture_now(entity_id)
        entity = self.state_store.get_entity(entity_id)
        self.events.info(f"Manual backup completed for {entity.title}.", entity_id)
        return snapshot

    # ------------------------------------------------------------------
    # Restore
    # ------------------------------------------------------------------

    def restore_latest(self, entity_id: str) -> RestoreResult:
        result = self.restorer.restore_latest(entity_id, self.active_store())
        self.persist(sync_cloud=False)
        return result

    # ------------------------------------------------------------------
    # Entities and watch roots
    # ------------------------------------------------------------------

    def add_entity(self, payload: dict) -> MonitoredEntity:
        """Create an entity, or update the one with the same id or executable."""
        title = (payload.get("title") or "").strip()
        watch_root = (payload.get("watch_root") or "").strip()
        if not title or not watch_root:
            raise PreconditionError("An entity needs a title and a save path.")

        executable = payload.get("executable_path") or ""
        entity = MonitoredEntity(
            id=payload.get("id") or slugify(title),
            title=title,
            watch_root=watch_root,
            process_name=payload.get("process_name") or lookup_name(executable),
            file_patterns=list(payload.get("file_patterns") or [MATCH_EVERYTHING]),
            executable_path=executable,
        )

        def upsert(state: AppState) -> MonitoredEntity:
            for index, current in enumerate(state.entities):
                same_exe = (current.executable_path and entity.executable_path
                            and current.executable_path == entity.executable_path)
                if current.id == entity.id or same_exe:
                    entity.id = current.id
                    entity.total_play_seconds = current.total_play_seconds
                    entity.last_played_at = current.last_played_at
                    entity.latest_local_save = current.latest_local_save
                    entity.latest_remote_save = current.latest_remote_save
                    state.entities[index] = entity
                    return entity
            state.entities.insert(0, entity)
            return entity

        saved = self.state_store.update(upsert)
        self.persist(sync_cloud=True)
        self._rewatch()
        return saved

    def update_entity(self, entity_id: str, changes: dict) -> MonitoredEntity:
        def apply(state: AppState) -> MonitoredEntity:
            entity = state.get_entity(entity_id)
            for name in EDITABLE_FIELDS:
                value = changes.get(name)
                if value is None:
                    continue
                if name == "file_patterns" and not value:
                    continue
                setattr(entity, name, list(value) if name == "file_patterns" else value)
            return entity

        updated = self.state_store.update(apply)
        self.persist(sync_cloud=True)
        self._rewatch()
        return updated

    def get_entity(self, entity_id: str) -> MonitoredEntity:
        return self.state_store.get_entity(entity_id)

    def add_watch_root(self, directory: str) -> list[str]:
        def add(state: AppState):
            if directory and directory not in state.watch_roots:
                state.watch_roots.append(directory)
            return list(state.watch_roots)

        roots = self.state_store.update(add)
        self.persist(sync_cloud=True)
        return roots

    def remove_watch_root(self, directory: str) -> list[str]:
        def remove(state: AppState):
            state.watch_roots = [r for r in state.watch_roots if r != directory]
            return list(state.watch_roots)

        roots = self.state_store.update(remove)
        self.persist(sync_cloud=True)
        return roots

    # ------------------------------------------------------------------
    # Store configuration
    # ------------------------------------------------------------------

    def set_offline_backup_dir(self, directory: str) -> str:
        """Use ``directory`` as the local mirror, adopting its catalog if any."""
        if not directory:
            raise PreconditionError("Choose a valid folder for local backups.")

        document = LocalMirrorStore(directory, self.device_label).load_catalog()

        def apply(state: AppState):
            state.offline_backup_dir = directory
            if catalog_has_content(document):
                merge_catalog(state, document)

        self.state_store.update(apply)
        if catalog_has_content(document):
            self.events.info("Catalog restored from the local backup folder.")
        self.persist(sync_cloud=self.remote_authenticated())
        self.events.info(f"Local backup folder set to {directory}.")
        self._rewatch()
        return directory

    def connect_remote(self, store: DriveBackupStore) -> bool:
        """Adopt an authenticated Drive store and reconcile catalogs."""
        if not store.available():
            raise PreconditionError("Google Drive is not authenticated.")
        self.drive_store = store

        credentials = getattr(store, "credentials", None)
        if credentials is not None:
            info = json.loads(credentials.to_json())

            def remember(state: AppState):
                state.remote_credentials = info

            self.state_store.update(remember)

        merged = self.catalog.reconnect(store)
        self.persist(sync_cloud=False)
        self._rewatch()
        return merged

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    def status(self) -> dict:
        state = self.state_store.state
        store = self.active_store()
        return {
            "app_name": self.app_name,
            "device_label": self.device_label,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "monitoring": self.watcher.running,
            "watched_entities": sorted(self.watcher.watched),
            "remote_authenticated": self.remote_authenticated(),
            "offline_backup_dir": state.offline_backup_dir,
            "active_store": store.name if store else None,
            "last_cloud_sync_at": state.last_cloud_sync_at,
            "requires_storage_choice": store is None,
            "capture_states": {
                e.id: self.scheduler.capture_state(e.id) for e in self.state_store.entities()
            },
        }

