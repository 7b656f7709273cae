"""Per-entity mutual exclusion shared by capture and restore."""

import threading
from contextlib import contextmanager


class EntityLocks:
    """Hands out one lock per entity id.

    Automatic capture, manual capture and restore all take the entity's
    lock, so a capture can never observe a restore's half-emptied
    directory and two restores cannot interleave.
    """

    def __init__(self):
        self._locks: dict[str, threading.Lock] = {}
        self._guard = threading.Lock()

    def get(self, entity_id: str) -> threading.Lock:
        with self._guard:
            lock = self._locks.get(entity_id)
            if lock is None:
                lock = threading.Lock()
                self._locks[entity_id] = lock
            return lock

    @contextmanager
    def hold(self, entity_id: str):
        lock = self.get(entity_id)
        with lock:
            yield

    def is_locked(self, entity_id: str) -> bool:
        return self.get(entity_id).locked()
