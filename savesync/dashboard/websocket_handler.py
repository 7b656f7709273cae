"""Live sync event feed for dashboard clients on /ws/live.

Each message is ``{"type": ..., "data": ...}``. Pipeline events arrive
as ``sync_event`` messages once the handler is attached to the
``EventChannel``.
"""

import json
import logging
import threading

from savesync.events import EventChannel
from savesync.models import SyncEvent

logger = logging.getLogger(__name__)

SYNC_EVENT = "sync_event"


class WebSocketHandler:
    """Registry of connected sockets that fans out sync events."""

    def __init__(self):
        self._clients: list = []
        self._lock = threading.Lock()
        self._detach = None

    def attach(self, events: EventChannel):
        """Forward every published event to the connected clients."""
        self.detach()
        self._detach = events.subscribe(self.on_sync_event)

    def detach(self):
        if self._detach is not None:
            self._detach()
            self._detach = None

    def on_sync_event(self, event: SyncEvent):
        self.broadcast(SYNC_EVENT, event.to_dict())

    def register(self, ws):
        with self._lock:
            self._clients.append(ws)
            total = len(self._clients)
        logger.debug("Live client connected (%d total)", total)

    def unregister(self, ws):
        with self._lock:
            if ws in self._clients:
                self._clients.remove(ws)
            total = len(self._clients)
        logger.debug("Live client disconnected (%d remaining)", total)

    def broadcast(self, event_type: str, data: dict) -> int:
        """Send to every client; returns how many received it."""
        message = json.dumps({"type": event_type, "data": data}, default=str)
        with self._lock:
            clients = list(self._clients)

        delivered = 0
        for ws in clients:
            try:
                ws.send(message)
                delivered += 1
            except Exception:
                logger.debug("Dropping unreachable live client")
                self.unregister(ws)
        return delivered

    @property
    def client_count(self) -> int:
        with self._lock:
            return len(self._clients)
