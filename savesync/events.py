"""Typed event channel between the pipeline and its observers.

The pipeline publishes ``SyncEvent`` records; the dashboard websocket
handler and the SQLite event history subscribe. Delivery is synchronous
and best-effort: a failing subscriber is logged and skipped.
"""

import logging
import threading
from typing import Callable

from savesync.models import (
    EVENT_INFO,
    EVENT_SNAPSHOT,
    EVENT_WARNING,
    SaveSnapshot,
    SyncEvent,
)

logger = logging.getLogger(__name__)

Subscriber = Callable[[SyncEvent], None]


class EventChannel:
    """Thread-safe publish/subscribe channel for ``SyncEvent``."""

    def __init__(self):
        self._subscribers: list[Subscriber] = []
        self._lock = threading.Lock()

    def subscribe(self, callback: Subscriber) -> Callable[[], None]:
        """Register a subscriber and return a function that removes it."""
        with self._lock:
            self._subscribers.append(callback)

        def unsubscribe():
            with self._lock:
                try:
                    self._subscribers.remove(callback)
                except ValueError:
                    pass

        return unsubscribe

    def publish(self, event: SyncEvent) -> SyncEvent:
        log_fn = logger.warning if event.kind == EVENT_WARNING else logger.info
        log_fn("[%s] %s: %s", event.kind, event.entity_id or "-", event.message)

        with self._lock:
            subscribers = list(self._subscribers)
        for callback in subscribers:
            try:
                callback(event)
            except Exception:
                logger.exception("Event subscriber %r failed", callback)
        return event

    def info(self, message: str, entity_id: str | None = None) -> SyncEvent:
        return self.publish(SyncEvent(EVENT_INFO, entity_id, message))

    def warning(self, message: str, entity_id: str | None = None) -> SyncEvent:
        return self.publish(SyncEvent(EVENT_WARNING, entity_id, message))

    def snapshot(self, message: str, snapshot: SaveSnapshot) -> SyncEvent:
        return self.publish(
            SyncEvent(EVENT_SNAPSHOT, snapshot.entity_id, message, snapshot=snapshot)
        )

    @property
    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._subscribers)
