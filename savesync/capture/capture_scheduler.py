"""Debounced, process-gated snapshot capture.

Per entity::

    IDLE --mutation--> PENDING --timer fires--> IN_FLIGHT --> IDLE
                          |  ^                      |
                          +--+ mutation             +--> PENDING (game running)
                          (timer replaced)

Every mutation replaces the entity's pending timer, so a burst of
writes collapses into one capture attempt after the settle window.
A timer only runs if it is still the registered one when it fires;
cancelling removes it under the same lock, so a cancelled timer can
never also fire.
"""

import logging
import threading

from savesync.capture.archive_builder import build_snapshot
from savesync.config import SETTLE_WINDOW_MS
from savesync.errors import NoFilesFoundError, PreconditionError, SaveSyncError
from savesync.events import EventChannel
from savesync.locks import EntityLocks
from savesync.models import MonitoredEntity, SaveSnapshot
from savesync.process.process_oracle import ProcessOracle
from savesync.state.state_store import StateStore

logger = logging.getLogger(__name__)

IDLE = "idle"
PENDING = "pending"
IN_FLIGHT = "in_flight"


class CaptureScheduler:
    """Schedules automatic captures and runs manual ones.

    Parameters
    ----------
    on_snapshot:
        Called as ``on_snapshot(entity, snapshot)`` while the entity lock
        is still held; uploads the snapshot and records it in state.
    timer_factory:
        ``threading.Timer``-compatible constructor (swappable in tests).
    """

    def __init__(
        self,
        state_store: StateStore,
        oracle: ProcessOracle,
        locks: EntityLocks,
        events: EventChannel,
        snapshot_dir: str,
        on_snapshot=None,
        settle_window: float = SETTLE_WINDOW_MS / 1000.0,
        timer_factory=threading.Timer,
    ):
        self.state_store = state_store
        self.oracle = oracle
        self.locks = locks
        self.events = events
        self.snapshot_dir = snapshot_dir
        self.on_snapshot = on_snapshot
        self.settle_window = settle_window
        self._timer_factory = timer_factory
        self._timers: dict[str, tuple[object, object]] = {}
        self._in_flight: set[str] = set()
        self._lock = threading.Lock()

    # ------------------------------------------------------------------
    # Timer management
    # ------------------------------------------------------------------

    def queue_capture(self, entity_id: str):
        """(Re)start the settle timer for an entity."""
        token = object()
        timer = self._timer_factory(self.settle_window, self._fire, args=(entity_id, token))
        timer.daemon = True
        with self._lock:
            previous = self._timers.pop(entity_id, None)
            if previous is not None:
                previous[1].cancel()
            self._timers[entity_id] = (token, timer)
        timer.start()
        logger.debug("Capture for %s scheduled in %.2fs", entity_id, self.settle_window)

    def cancel(self, entity_id: str) -> bool:
        """Cancel the pending timer; True if one was pending."""
        with self._lock:
            pending = self._timers.pop(entity_id, None)
        if pending is None:
            return False
        pending[1].cancel()
        return True

    def cancel_all(self):
        with self._lock:
            pending = list(self._timers.values())
            self._timers.clear()
        for _token, timer in pending:
            timer.cancel()

    def capture_state(self, entity_id: str) -> str:
        with self._lock:
            if entity_id in self._in_flight:
                return IN_FLIGHT
            if entity_id in self._timers:
                return PENDING
        return IDLE

    def _fire(self, entity_id: str, token: object):
        with self._lock:
            current = self._timers.get(entity_id)
            if current is None or current[0] is not token:
                return
            del self._timers[entity_id]
        self._capture_automatic(entity_id)

    # ------------------------------------------------------------------
    # Capture paths
    # ------------------------------------------------------------------

    def capture_now(self, entity_id: str) -> SaveSnapshot:
        """Manual capture. Errors propagate to the caller."""
        self.cancel(entity_id)
        entity = self.state_store.get_entity(entity_id)
        with self.locks.hold(entity_id):
            if self.oracle.is_running(entity.process_name):
                raise PreconditionError(
                    f"Cannot back up {entity.title} while {entity.process_name} is still running."
                )
            return self._run_capture(entity)

    def _capture_automatic(self, entity_id: str):
        try:
            entity = self.state_store.get_entity(entity_id)
            with self.locks.hold(entity_id):
                if self.oracle.is_running(entity.process_name):
                    running = True
                else:
                    running = False
                    self._run_capture(entity)
        except NoFilesFoundError as exc:
            self.events.warning(str(exc), entity_id)
            return
        except SaveSyncError as exc:
            self.events.warning(f"Automatic backup failed: {exc}", entity_id)
            return
        except Exception as exc:
            logger.exception("Unexpected error capturing %s", entity_id)
            self.events.warning(f"Automatic backup failed: {exc}", entity_id)
            return

        if running:
            self.events.info(
                f"Changes detected, but {entity.process_name} is still running.", entity_id,
            )
            self.queue_capture(entity_id)

    def _run_capture(self, entity: MonitoredEntity) -> SaveSnapshot:
        with self._lock:
            self._in_flight.add(entity.id)
        try:
            snapshot = build_snapshot(entity, self.snapshot_dir)
            self.events.snapshot(f"New local save detected for {entity.title}.", snapshot)
            if self.on_snapshot:
                self.on_snapshot(entity, snapshot)
            return snapshot
        finally:
            with self._lock:
                self._in_flight.discard(entity.id)
