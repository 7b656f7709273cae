"""Tests for the persisted state document and the cross-device catalog."""

import json
import threading

import pytest

from savesync.config import DEFAULTS, load_config, process_poll_interval_seconds
from savesync.errors import NetworkError, NotFoundError
from savesync.events import EventChannel
from savesync.models import MonitoredEntity, RemoteBackupRecord, SaveSnapshot
from savesync.state.catalog import (
    CatalogSynchronizer,
    catalog_has_content,
    merge_catalog,
    serialize_catalog,
)
from savesync.state.state_store import AppState, StateStore
from savesync.storage.local_store import LocalMirrorStore


def _snapshot(entity_id="portal", fingerprint="f" * 64):
    return SaveSnapshot(
        id="snap-1", entity_id=entity_id, created_at="2024-03-01T10:00:00+00:00",
        file_count=2, archive_name=f"{entity_id}-snap-1.zip",
        archive_path=f"/tmp/{entity_id}-snap-1.zip", fingerprint=fingerprint,
        size_bytes=120,
    )


def _record(entity_id="portal", record_id="rec-1"):
    return RemoteBackupRecord(
        id=record_id, entity_id=entity_id, created_at="2024-03-01T10:00:00+00:00",
        archive_name=f"{entity_id}-{record_id}.zip", fingerprint="a" * 64,
        size_bytes=120, device_label="Laptop",
    )


@pytest.fixture
def store(tmp_path):
    s = StateStore(str(tmp_path / "data"))
    s.load()
    return s


# ---------------------------------------------------------------------------
# StateStore
# ---------------------------------------------------------------------------

class TestStateStore:
    def test_missing_file_is_empty_state(self, store):
        assert store.state.entities == []
        assert store.state.offline_backup_dir is None

    def test_roundtrip(self, store, tmp_path):
        entity = MonitoredEntity(id="portal", title="Portal 2", watch_root="/saves/portal",
                                 latest_local_save=_snapshot(), latest_remote_save=_record())
        store.update(lambda state: state.entities.append(entity))
        store.update(lambda state: state.watch_roots.append("/saves"))

        reloaded = StateStore(str(tmp_path / "data")).load()
        again = reloaded.get_entity("portal")
        assert again.title == "Portal 2"
        assert again.latest_local_save == _snapshot()
        assert again.latest_remote_save == _record()
        assert reloaded.watch_roots == ["/saves"]

    def test_corrupt_file_is_empty_state(self, store):
        store.state_path.parent.mkdir(parents=True, exist_ok=True)
        store.state_path.write_text("{broken")
        assert store.load().entities == []

    def test_malformed_entity_dropped(self, store):
        store.state_path.parent.mkdir(parents=True, exist_ok=True)
        store.state_path.write_text(json.dumps({
            "entities": [{"title": "no id"}, {"id": "ok", "watch_root": "/x"}],
        }))
        assert [e.id for e in store.load().entities] == ["ok"]

    def test_write_is_atomic(self, store):
        store.update(lambda state: state.watch_roots.append("/a"))
        leftovers = [p.name for p in store.data_dir.iterdir() if p.name.endswith(".tmp")]
        assert leftovers == []

    def test_get_entity_missing(self, store):
        with pytest.raises(NotFoundError):
            store.get_entity("nope")

    def test_concurrent_updates_not_lost(self, store):
        def add(i):
            store.update(lambda state: state.watch_roots.append(f"/root{i}"))

        threads = [threading.Thread(target=add, args=(i,)) for i in range(20)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert len(store.state.watch_roots) == 20
        assert len(StateStore(str(store.data_dir)).load().watch_roots) == 20


# ---------------------------------------------------------------------------
# Catalog document
# ---------------------------------------------------------------------------

class TestSerializeCatalog:
    def test_volatile_fields_stripped(self):
        entity = MonitoredEntity(id="portal", title="Portal 2", watch_root="/s",
                                 currently_running=True,
                                 session_started_at="2024-03-01T10:00:00",
                                 latest_local_save=_snapshot(),
                                 latest_remote_save=_record())
        doc = serialize_catalog(AppState(entities=[entity], watch_roots=["/s"]),
                                "SaveSync", "Laptop")

        record = doc["entities"][0]
        assert record["currently_running"] is False
        assert record["session_started_at"] is None
        assert record["latest_local_save"] is None
        assert record["latest_remote_save"]["id"] == "rec-1"
        assert doc["device_label"] == "Laptop"
        assert doc["app_name"] == "SaveSync"
        assert doc["updated_at"]

    def test_has_content(self):
        assert not catalog_has_content(None)
        assert not catalog_has_content({"entities": [], "watch_roots": []})
        assert catalog_has_content({"entities": [], "watch_roots": ["/x"]})


class TestMergeCatalog:
    def test_keeps_local_snapshot(self):
        local = MonitoredEntity(id="portal", title="Portal 2", watch_root="/s",
                                latest_local_save=_snapshot())
        state = AppState(entities=[local])
        remote_entity = MonitoredEntity(id="portal", title="Portal 2 (renamed)",
                                        watch_root="/s", total_play_seconds=500,
                                        latest_remote_save=_record())
        document = {"entities": [remote_entity.to_dict()], "watch_roots": ["/s"]}
        document["entities"][0]["latest_local_save"] = None

        merge_catalog(state, document)

        merged = state.get_entity("portal")
        assert merged.latest_local_save == _snapshot()
        assert merged.title == "Portal 2 (renamed)"
        assert merged.total_play_seconds == 500
        assert merged.latest_remote_save == _record()
        assert state.watch_roots == ["/s"]

    def test_missing_lists_untouched(self):
        state = AppState(entities=[MonitoredEntity(id="a", title="A", watch_root="/a")],
                         watch_roots=["/a"])
        merge_catalog(state, {"app_name": "SaveSync"})
        assert [e.id for e in state.entities] == ["a"]
        assert state.watch_roots == ["/a"]

    def test_bad_entries_skipped(self):
        state = AppState()
        merge_catalog(state, {"entities": [{"title": "no id"}, {"id": "b", "title": "B"}]})
        assert [e.id for e in state.entities] == ["b"]


# ---------------------------------------------------------------------------
# CatalogSynchronizer
# ---------------------------------------------------------------------------

class BrokenLatestStore(LocalMirrorStore):
    def fetch_latest(self, entity_id):
        raise NetworkError("timeout")


@pytest.fixture
def received():
    return []


@pytest.fixture
def synchronizer(store, received):
    events = EventChannel()
    events.subscribe(received.append)
    return CatalogSynchronizer(store, events, "SaveSync", "Desktop")


class TestCatalogSynchronizer:
    def test_publish_returns_sync_time(self, synchronizer, tmp_path):
        mirror = LocalMirrorStore(str(tmp_path / "m"), "Desktop")
        stamp = synchronizer.publish([mirror])
        assert mirror.load_catalog()["updated_at"] == stamp
        assert synchronizer.publish([]) is None

    def test_reconnect_seeds_empty_store(self, synchronizer, store, tmp_path, received):
        store.update(lambda s: s.entities.append(
            MonitoredEntity(id="portal", title="Portal 2", watch_root="/s")))
        mirror = LocalMirrorStore(str(tmp_path / "m"), "Desktop")

        assert synchronizer.reconnect(mirror) is False
        assert mirror.load_catalog()["entities"][0]["id"] == "portal"
        assert any("initial catalog" in e.message for e in received)

    def test_reconnect_merges_existing(self, synchronizer, store, tmp_path):
        mirror = LocalMirrorStore(str(tmp_path / "m"), "Laptop")
        other = AppState(entities=[MonitoredEntity(id="hades", title="Hades", watch_root="/h")],
                         watch_roots=["/h"])
        mirror.sync_catalog(serialize_catalog(other, "SaveSync", "Laptop"))

        assert synchronizer.reconnect(mirror) is True
        assert [e.id for e in store.entities()] == ["hades"]
        assert store.state.watch_roots == ["/h"]

    def test_refresh_keeps_old_record_on_failure(self, synchronizer, store, tmp_path):
        store.update(lambda s: s.entities.append(MonitoredEntity(
            id="portal", title="Portal 2", watch_root="/s", latest_remote_save=_record())))
        synchronizer.refresh_remote_records(BrokenLatestStore(str(tmp_path / "m"), "Desktop"))
        assert store.get_entity("portal").latest_remote_save == _record()


# ---------------------------------------------------------------------------
# Config
# ---------------------------------------------------------------------------

class TestConfig:
    def test_defaults_when_missing(self, tmp_path):
        config = load_config(str(tmp_path / "absent.json"))
        assert config["sync"]["settle_window_ms"] == DEFAULTS["sync"]["settle_window_ms"]
        assert config["database"]["path"].endswith("events.db")

    def test_file_overrides_nested(self, tmp_path):
        path = tmp_path / "config.json"
        path.write_text(json.dumps({
            "data_dir": str(tmp_path / "data"),
            "sync": {"settle_window_ms": 2000},
        }))
        config = load_config(str(path))
        assert config["sync"]["settle_window_ms"] == 2000
        assert config["sync"]["stability_poll_ms"] == DEFAULTS["sync"]["stability_poll_ms"]
        assert config["database"]["path"] == str((tmp_path / "data").resolve() / "events.db")

    def test_poll_interval_floor(self):
        assert process_poll_interval_seconds({"sync": {"process_poll_interval_ms": 100}}) == 5.0
        assert process_poll_interval_seconds({"sync": {"process_poll_interval_ms": 15000}}) == 15.0
