"""Filesystem watching for monitored save directories (watchdog).

Created and modified files are held back by ``WriteStabilityTracker``
until their size and mtime stop changing, so a capture never picks up
a half-written save. Deletions and moves are reported straight away.
"""

import logging
import os
import threading
import time
from pathlib import Path

from watchdog.events import FileSystemEventHandler
from watchdog.observers import Observer

from savesync.config import STABILITY_POLL_MS, STABILITY_THRESHOLD_MS
from savesync.events import EventChannel
from savesync.models import MonitoredEntity

logger = logging.getLogger(__name__)


def file_signature(path: str) -> tuple[int, int] | None:
    """Return (size, mtime_ns), or None if the file is gone."""
    try:
        st = os.stat(path)
    except OSError:
        return None
    return st.st_size, st.st_mtime_ns


class WriteStabilityTracker:
    """Reports a file once it has been unchanged for ``threshold`` seconds."""

    def __init__(self, on_stable, threshold: float = STABILITY_THRESHOLD_MS / 1000.0,
                 poll_interval: float = STABILITY_POLL_MS / 1000.0, clock=time.monotonic):
        self.on_stable = on_stable
        self.threshold = threshold
        self.poll_interval = poll_interval
        self._clock = clock
        # path -> [entity_id, signature, last_change]
        self._pending: dict[str, list] = {}
        self._lock = threading.Lock()
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    def track(self, entity_id: str, path: str):
        with self._lock:
            self._pending[path] = [entity_id, file_signature(path), self._clock()]

    def check(self) -> list[str]:
        """Poll tracked files once; notify and return entities with stable writes."""
        now = self._clock()
        settled = []
        with self._lock:
            for path, entry in list(self._pending.items()):
                signature = file_signature(path)
                if signature != entry[1]:
                    entry[1] = signature
                    entry[2] = now
                elif now - entry[2] >= self.threshold:
                    del self._pending[path]
                    if entry[0] not in settled:
                        settled.append(entry[0])
        for entity_id in settled:
            self.on_stable(entity_id)
        return settled

    @property
    def pending_count(self) -> int:
        with self._lock:
            return len(self._pending)

    def start(self):
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, daemon=True, name="write-stability")
        self._thread.start()

    def stop(self):
        self._stop.set()
        if self._thread:
            self._thread.join(timeout=5)
            self._thread = None
        with self._lock:
            self._pending.clear()

    def _run(self):
        while not self._stop.wait(timeout=self.poll_interval):
            try:
                self.check()
            except Exception:
                logger.exception("Write stability check failed")


class SaveEventHandler(FileSystemEventHandler):
    """Routes watchdog events for one entity to the tracker or scheduler."""

    def __init__(self, entity_id: str, tracker: WriteStabilityTracker, on_mutation):
        super().__init__()
        self.entity_id = entity_id
        self.tracker = tracker
        self.on_mutation = on_mutation

    def on_created(self, event):
        try:
            if event.is_directory:
                self.on_mutation(self.entity_id)
            else:
                self.tracker.track(self.entity_id, event.src_path)
        except Exception:
            logger.exception("Error handling created event for %s", event.src_path)

    def on_modified(self, event):
        # Directory mtime changes accompany every child event; skip them
        if event.is_directory:
            return
        try:
            self.tracker.track(self.entity_id, event.src_path)
        except Exception:
            logger.exception("Error handling modified event for %s", event.src_path)

    def on_deleted(self, event):
        try:
            self.on_mutation(self.entity_id)
        except Exception:
            logger.exception("Error handling deleted event for %s", event.src_path)

    def on_moved(self, event):
        try:
            if not event.is_directory:
                self.tracker.track(self.entity_id, event.dest_path)
            self.on_mutation(self.entity_id)
        except Exception:
            logger.exception("Error handling moved event for %s", event.src_path)


class SaveWatcher:
    """One recursive watchdog watch per entity, sharing an observer."""

    def __init__(
        self,
        on_mutation,
        events: EventChannel,
        stability_threshold: float = STABILITY_THRESHOLD_MS / 1000.0,
        stability_poll: float = STABILITY_POLL_MS / 1000.0,
    ):
        self.on_mutation = on_mutation
        self.events = events
        self.tracker = WriteStabilityTracker(
            on_stable=on_mutation,
            threshold=stability_threshold,
            poll_interval=stability_poll,
        )
        self.observer = None
        self._watched: dict[str, str] = {}
        self._running = False

    def start(self, entities: list[MonitoredEntity]) -> int:
        """Watch every entity whose root exists; returns how many."""
        self.stop()
        self.observer = Observer()
        for entity in entities:
            watch_path = Path(entity.watch_root) if entity.watch_root else None
            if watch_path is None or not watch_path.is_dir():
                self.events.warning(f"Save path {entity.watch_root} does not exist.", entity.id)
                continue
            handler = SaveEventHandler(entity.id, self.tracker, self.on_mutation)
            self.observer.schedule(handler, str(watch_path), recursive=True)
            self._watched[entity.id] = str(watch_path)
            logger.info("Watching %s for %s", watch_path, entity.id)

        self.observer.start()
        self.tracker.start()
        self._running = True
        logger.info("Save watcher started. Watching %d directories.", len(self._watched))
        return len(self._watched)

    def stop(self):
        if self._running:
            self.tracker.stop()
            self.observer.stop()
            self.observer.join()
            self._running = False
            logger.info("Save watcher stopped.")
        self._watched.clear()

    @property
    def running(self) -> bool:
        return self._running

    @property
    def watched(self) -> dict[str, str]:
        return dict(self._watched)
