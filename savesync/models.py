"""Records shared by the capture, storage and restore layers."""

from dataclasses import asdict, dataclass, field, fields
from datetime import datetime

MATCH_EVERYTHING = "**/*"


def _known(cls, data: dict) -> dict:
    names = {f.name for f in fields(cls)}
    return {k: v for k, v in data.items() if k in names}


@dataclass(frozen=True)
class SaveSnapshot:
    """Immutable local capture of an entity's save files."""
    id: str
    entity_id: str
    created_at: str
    file_count: int
    archive_name: str
    archive_path: str
    fingerprint: str
    size_bytes: int

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict | None) -> "SaveSnapshot | None":
        if not data:
            return None
        return cls(**_known(cls, data))


@dataclass(frozen=True)
class RemoteBackupRecord:
    """Metadata of an uploaded snapshot.

    ``artifact_ref`` and ``metadata_ref`` are Drive file ids for the
    remote store and filesystem paths for the local mirror.
    """
    id: str
    entity_id: str
    created_at: str
    archive_name: str
    fingerprint: str
    size_bytes: int
    device_label: str
    artifact_ref: str | None = None
    metadata_ref: str | None = None

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict | None) -> "RemoteBackupRecord | None":
        if not data:
            return None
        return cls(**_known(cls, data))


@dataclass
class MonitoredEntity:
    """A save directory paired with the game process that writes it.

    ``currently_running`` and ``session_started_at`` are runtime-only and
    owned by the pipeline; they are reset whenever a record is loaded.
    """
    id: str
    title: str
    watch_root: str
    process_name: str = ""
    file_patterns: list[str] = field(default_factory=lambda: [MATCH_EVERYTHING])
    executable_path: str = ""
    total_play_seconds: int = 0
    last_played_at: str | None = None
    latest_local_save: SaveSnapshot | None = None
    latest_remote_save: RemoteBackupRecord | None = None
    currently_running: bool = False
    session_started_at: str | None = None

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "title": self.title,
            "watch_root": self.watch_root,
            "process_name": self.process_name,
            "file_patterns": list(self.file_patterns),
            "executable_path": self.executable_path,
            "total_play_seconds": self.total_play_seconds,
            "last_played_at": self.last_played_at,
            "latest_local_save": (
                self.latest_local_save.to_dict() if self.latest_local_save else None
            ),
            "latest_remote_save": (
                self.latest_remote_save.to_dict() if self.latest_remote_save else None
            ),
            "currently_running": self.currently_running,
            "session_started_at": self.session_started_at,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "MonitoredEntity":
        patterns = data.get("file_patterns")
        if not isinstance(patterns, list) or not patterns:
            patterns = [MATCH_EVERYTHING]
        return cls(
            id=data["id"],
            title=data.get("title") or data["id"],
            watch_root=data.get("watch_root") or "",
            process_name=data.get("process_name") or "",
            file_patterns=list(patterns),
            executable_path=data.get("executable_path") or "",
            total_play_seconds=int(data.get("total_play_seconds") or 0),
            last_played_at=data.get("last_played_at"),
            latest_local_save=SaveSnapshot.from_dict(data.get("latest_local_save")),
            latest_remote_save=RemoteBackupRecord.from_dict(data.get("latest_remote_save")),
        )


EVENT_INFO = "info"
EVENT_WARNING = "warning"
EVENT_SNAPSHOT = "snapshot"


@dataclass
class SyncEvent:
    """Notification published to observers (dashboard, event history)."""
    kind: str
    entity_id: str | None
    message: str
    snapshot: SaveSnapshot | None = None
    timestamp: str = field(default_factory=lambda: datetime.now().isoformat())

    def to_dict(self) -> dict:
        return {
            "kind": self.kind,
            "entity_id": self.entity_id,
            "message": self.message,
            "snapshot": self.snapshot.to_dict() if self.snapshot else None,
            "timestamp": self.timestamp,
        }


@dataclass(frozen=True)
class ProcessState:
    running: bool
    started_at: datetime | None = None  # None means unknown, not "never"


@dataclass(frozen=True)
class RestoreResult:
    restored_at: str
    workspace: str

    def to_dict(self) -> dict:
        return asdict(self)
