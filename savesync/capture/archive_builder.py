"""Save file enumeration, content fingerprinting and zip archiving.

Everything here is a pure function of the filesystem: no network,
no process checks and no shared state, so captures for different
entities can run at the same time.

Fingerprint layout (SHA-256, files in relative-path order)::

    for each file:
        relative path (POSIX separators)
        last-modified timestamp (ISO 8601, UTC)
        raw file bytes
"""

import hashlib
import logging
import os
import re
import uuid
import zipfile
from dataclasses import dataclass
from datetime import datetime, timezone
from functools import lru_cache
from pathlib import Path

from savesync.errors import NoFilesFoundError, NotFoundError, StorageIOError
from savesync.models import MATCH_EVERYTHING, MonitoredEntity, SaveSnapshot

logger = logging.getLogger(__name__)

CHUNK_SIZE = 65536
ARCHIVE_COMPRESSLEVEL = 9


@dataclass(frozen=True)
class CollectedFile:
    relative_path: str
    full_path: str
    size_bytes: int
    modified_at: str


@lru_cache(maxsize=256)
def _pattern_regex(pattern: str) -> re.Pattern:
    parts = []
    i = 0
    while i < len(pattern):
        ch = pattern[i]
        if pattern.startswith("**", i):
            parts.append(".*")
            i += 2
            continue
        if ch == "*":
            parts.append(r"[^/\\]*")
        elif ch == "?":
            parts.append(".")
        else:
            parts.append(re.escape(ch))
        i += 1
    return re.compile("^" + "".join(parts) + "$", re.IGNORECASE)


def matches_pattern(relative_path: str, pattern: str) -> bool:
    """Case-insensitive glob match against a root-relative path.

    ``**`` crosses directory separators, ``*`` does not, ``?`` is one
    character. An empty pattern or ``**/*`` selects everything.
    """
    if not pattern or pattern == MATCH_EVERYTHING:
        return True
    return bool(_pattern_regex(pattern).match(relative_path))


def _mtime_iso(st_mtime: float) -> str:
    return datetime.fromtimestamp(st_mtime, tz=timezone.utc).isoformat()


def collect_files(root_dir: str, patterns: list[str] | None = None) -> list[CollectedFile]:
    """Return files under ``root_dir`` matching any pattern, sorted by relative path."""
    root = Path(root_dir)
    if not root.is_dir():
        raise NotFoundError(f"Watch root does not exist: {root_dir}")

    patterns = patterns or []
    files = []
    for dirpath, _dirnames, filenames in os.walk(root):
        for name in filenames:
            full_path = Path(dirpath) / name
            relative_path = full_path.relative_to(root).as_posix()
            if patterns and not any(matches_pattern(relative_path, p) for p in patterns):
                continue
            try:
                st = full_path.stat()
            except FileNotFoundError:
                # Deleted between listing and stat
                continue
            files.append(CollectedFile(
                relative_path=relative_path,
                full_path=str(full_path),
                size_bytes=st.st_size,
                modified_at=_mtime_iso(st.st_mtime),
            ))

    files.sort(key=lambda f: f.relative_path)
    return files


def compute_fingerprint(files: list[CollectedFile]) -> str:
    """SHA-256 over (path, mtime, bytes) of every file in path order.

    The list is re-sorted here so the digest never depends on the order
    the filesystem happened to enumerate entries in.
    """
    h = hashlib.sha256()
    try:
        for f in sorted(files, key=lambda item: item.relative_path):
            h.update(f.relative_path.encode("utf-8"))
            h.update(f.modified_at.encode("utf-8"))
            with open(f.full_path, "rb") as fh:
                for chunk in iter(lambda: fh.read(CHUNK_SIZE), b""):
                    h.update(chunk)
    except OSError as exc:
        raise StorageIOError(f"Could not read save file for fingerprint: {exc}") from exc
    return h.hexdigest()


def build_archive(root_dir: str, archive_path: str, files: list[CollectedFile]) -> int:
    """Zip ``files`` under their relative paths; returns bytes processed."""
    archive = Path(archive_path)
    processed = 0
    try:
        archive.parent.mkdir(parents=True, exist_ok=True)
        with zipfile.ZipFile(
            str(archive), "w", zipfile.ZIP_DEFLATED,
            compresslevel=ARCHIVE_COMPRESSLEVEL,
        ) as zf:
            for f in files:
                zf.write(os.path.join(root_dir, f.relative_path), arcname=f.relative_path)
                processed += os.path.getsize(f.full_path)
    except OSError as exc:
        try:
            archive.unlink()
        except OSError:
            pass
        raise StorageIOError(f"Failed to build archive {archive_path}: {exc}") from exc
    return processed


def build_snapshot(entity: MonitoredEntity, output_dir: str) -> SaveSnapshot:
    """Capture an entity's matched files into a new archive.

    Raises ``NoFilesFoundError`` before writing anything when the
    selectors match nothing.
    """
    files = collect_files(entity.watch_root, entity.file_patterns)
    if not files:
        raise NoFilesFoundError(
            f"No files to back up in {entity.watch_root} for {entity.title}"
        )

    fingerprint = compute_fingerprint(files)
    snapshot_id = str(uuid.uuid4())
    archive_name = f"{entity.id}-{snapshot_id}.zip"
    archive_path = str(Path(output_dir) / entity.id / archive_name)
    size_bytes = build_archive(entity.watch_root, archive_path, files)

    logger.info("Archived %d file(s) for %s -> %s (fingerprint=%s)",
                len(files), entity.id, archive_path, fingerprint[:12])

    return SaveSnapshot(
        id=snapshot_id,
        entity_id=entity.id,
        created_at=datetime.now(timezone.utc).isoformat(),
        file_count=len(files),
        archive_name=archive_name,
        archive_path=archive_path,
        fingerprint=fingerprint,
        size_bytes=size_bytes,
    )
