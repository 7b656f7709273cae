"""Tests for the event channel, SQLite event history and live feed."""

import json

import pytest

from savesync.dashboard.websocket_handler import SYNC_EVENT, WebSocketHandler
from savesync.database.event_logger import EventLogger
from savesync.events import EventChannel
from savesync.models import EVENT_INFO, EVENT_SNAPSHOT, EVENT_WARNING, SaveSnapshot, SyncEvent


def _snapshot():
    return SaveSnapshot(
        id="snap-9", entity_id="factorio", created_at="2024-06-01T12:00:00+00:00",
        file_count=1, archive_name="factorio-snap-9.zip",
        archive_path="/tmp/factorio-snap-9.zip", fingerprint="c" * 64, size_bytes=42,
    )


class FakeWS:
    def __init__(self, fail=False):
        self.sent = []
        self.fail = fail

    def send(self, message):
        if self.fail:
            raise ConnectionError("closed")
        self.sent.append(json.loads(message))


@pytest.fixture
def event_logger(tmp_path):
    el = EventLogger(str(tmp_path / "events.db"))
    yield el
    el.close()


# ---------------------------------------------------------------------------
# EventChannel
# ---------------------------------------------------------------------------

class TestEventChannel:
    def test_subscribers_receive_events(self):
        channel = EventChannel()
        got = []
        channel.subscribe(got.append)
        channel.info("hello", "factorio")
        channel.warning("careful")
        assert [(e.kind, e.entity_id) for e in got] == [
            (EVENT_INFO, "factorio"), (EVENT_WARNING, None),
        ]

    def test_snapshot_event_carries_snapshot(self):
        channel = EventChannel()
        got = []
        channel.subscribe(got.append)
        channel.snapshot("new save", _snapshot())
        assert got[0].kind == EVENT_SNAPSHOT
        assert got[0].entity_id == "factorio"
        assert got[0].snapshot.id == "snap-9"

    def test_failing_subscriber_isolated(self):
        channel = EventChannel()
        got = []

        def broken(event):
            raise RuntimeError("boom")

        channel.subscribe(broken)
        channel.subscribe(got.append)
        channel.info("still delivered")
        assert len(got) == 1

    def test_unsubscribe(self):
        channel = EventChannel()
        got = []
        unsubscribe = channel.subscribe(got.append)
        unsubscribe()
        unsubscribe()
        channel.info("nobody listening")
        assert got == []
        assert channel.subscriber_count == 0


# ---------------------------------------------------------------------------
# EventLogger
# ---------------------------------------------------------------------------

class TestEventLogger:
    def test_schema_columns(self, event_logger):
        conn = event_logger._get_connection()
        columns = {row[1] for row in conn.execute("PRAGMA table_info(sync_events)")}
        assert {"id", "timestamp", "kind", "entity_id", "message",
                "snapshot_id", "snapshot_json"} <= columns

    def test_log_and_query(self, event_logger):
        row_id = event_logger.log_event(SyncEvent(EVENT_INFO, "factorio", "Backup saved"))
        assert row_id > 0
        events = event_logger.get_events()
        assert events[0]["message"] == "Backup saved"
        assert events[0]["snapshot"] is None

    def test_snapshot_stored_as_json(self, event_logger):
        event_logger.log_event(SyncEvent(EVENT_SNAPSHOT, "factorio", "New save",
                                         snapshot=_snapshot()))
        event = event_logger.get_events(kind=EVENT_SNAPSHOT)[0]
        assert event["snapshot_id"] == "snap-9"
        assert event["snapshot"]["fingerprint"] == "c" * 64

    def test_filters_and_order(self, event_logger):
        event_logger.log_event(SyncEvent(EVENT_INFO, "a", "first", timestamp="2024-01-01T00:00:00"))
        event_logger.log_event(SyncEvent(EVENT_WARNING, "b", "second", timestamp="2024-01-02T00:00:00"))
        event_logger.log_event(SyncEvent(EVENT_INFO, "a", "third", timestamp="2024-01-03T00:00:00"))

        assert [e["message"] for e in event_logger.get_events()] == ["third", "second", "first"]
        assert [e["message"] for e in event_logger.get_events(entity_id="a")] == ["third", "first"]
        assert [e["message"] for e in event_logger.get_events(kind=EVENT_WARNING)] == ["second"]
        assert [e["message"] for e in event_logger.get_events(since="2024-01-02")] == ["third", "second"]
        assert len(event_logger.get_events(limit=1)) == 1

    def test_subscribed_to_channel(self, event_logger):
        channel = EventChannel()
        channel.subscribe(event_logger.log_event)
        channel.warning("Save path missing", "factorio")
        assert event_logger.get_events(entity_id="factorio")[0]["kind"] == EVENT_WARNING


# ---------------------------------------------------------------------------
# WebSocketHandler
# ---------------------------------------------------------------------------

class TestWebSocketHandler:
    def test_broadcast(self):
        handler = WebSocketHandler()
        ws = FakeWS()
        handler.register(ws)
        assert handler.broadcast("restore", {"entity_id": "factorio"}) == 1
        assert ws.sent == [{"type": "restore", "data": {"entity_id": "factorio"}}]

    def test_dead_client_dropped(self):
        handler = WebSocketHandler()
        handler.register(FakeWS(fail=True))
        handler.register(FakeWS())
        assert handler.broadcast("ping", {}) == 1
        assert handler.client_count == 1

    def test_attached_to_channel(self):
        channel = EventChannel()
        handler = WebSocketHandler()
        ws = FakeWS()
        handler.register(ws)
        handler.attach(channel)

        channel.info("Backup saved", "factorio")
        assert ws.sent[0]["type"] == SYNC_EVENT
        assert ws.sent[0]["data"]["message"] == "Backup saved"

        handler.detach()
        channel.info("after detach")
        assert len(ws.sent) == 1

    def test_unregister(self):
        handler = WebSocketHandler()
        ws = FakeWS()
        handler.register(ws)
        handler.unregister(ws)
        handler.unregister(ws)
        assert handler.client_count == 0
