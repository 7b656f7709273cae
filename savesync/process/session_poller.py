"""Background play-session tracking.

Polls the process oracle for every entity on a fixed interval and
records closed->running / running->closed transitions, accumulating
play time on each close.
"""

import logging
import threading
from datetime import datetime

from savesync.config import MIN_PROCESS_POLL_INTERVAL_MS
from savesync.process.process_oracle import ProcessOracle
from savesync.state.state_store import AppState, StateStore

logger = logging.getLogger(__name__)


class SessionPoller:
    """Runs ``poll_once`` in a daemon thread until stopped."""

    def __init__(self, state_store: StateStore, oracle: ProcessOracle,
                 interval_seconds: float, clock=datetime.now):
        self.state_store = state_store
        self.oracle = oracle
        self.interval = max(MIN_PROCESS_POLL_INTERVAL_MS / 1000.0, interval_seconds)
        self._clock = clock
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    def start(self):
        if self._thread and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(
            target=self._run, daemon=True, name="session-poller",
        )
        self._thread.start()
        logger.info("Session poller started (every %.1fs)", self.interval)

    def stop(self):
        self._stop.set()
        if self._thread:
            self._thread.join(timeout=5)
            self._thread = None

    def _run(self):
        while not self._stop.wait(timeout=self.interval):
            try:
                self.poll_once()
            except Exception:
                logger.exception("Session poll failed")

    def poll_once(self) -> bool:
        """Evaluate every entity once; returns True if any state changed."""
        entities = self.state_store.entities()
        if not entities:
            return False

        observed = {}
        for entity in entities:
            try:
                observed[entity.id] = self.oracle.get_process_state(entity.process_name)
            except Exception as exc:
                logger.warning("Process query failed for %s: %s", entity.id, exc)

        now = self._clock()
        changed = []

        def apply(state: AppState):
            for entity in state.entities:
                proc = observed.get(entity.id)
                if proc is None:
                    continue
                if proc.running and not entity.currently_running:
                    started = proc.started_at or now
                    entity.currently_running = True
                    entity.session_started_at = started.isoformat()
                    changed.append(entity.id)
                    logger.info("%s started (since %s)", entity.id, entity.session_started_at)
                elif not proc.running and entity.currently_running:
                    elapsed = 0
                    if entity.session_started_at:
                        started = datetime.fromisoformat(entity.session_started_at)
                        elapsed = max(0, round((now - started).total_seconds()))
                    entity.total_play_seconds += elapsed
                    entity.currently_running = False
                    entity.session_started_at = None
                    entity.last_played_at = now.isoformat()
                    changed.append(entity.id)
                    logger.info("%s closed after %ds", entity.id, elapsed)

        with self.state_store.lock:
            apply(self.state_store.state)
            if changed:
                self.state_store.save()
        return bool(changed)
