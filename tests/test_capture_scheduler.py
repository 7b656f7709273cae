"""Tests for debounced, process-gated capture scheduling.

Timers are replaced with a manual fake so firing order is deterministic.
"""

import pytest

from savesync.capture.capture_scheduler import IDLE, IN_FLIGHT, PENDING, CaptureScheduler
from savesync.errors import NetworkError, PreconditionError
from savesync.events import EventChannel
from savesync.locks import EntityLocks
from savesync.models import EVENT_INFO, EVENT_SNAPSHOT, EVENT_WARNING, MonitoredEntity, ProcessState
from savesync.state.state_store import StateStore


# ---------------------------------------------------------------------------
# Fakes
# ---------------------------------------------------------------------------

class FakeTimer:
    def __init__(self, interval, function, args=()):
        self.interval = interval
        self.function = function
        self.args = args
        self.daemon = False
        self.started = False
        self.cancelled = False
        self.fired = False

    def start(self):
        self.started = True

    def cancel(self):
        self.cancelled = True

    def fire(self):
        # Simulates expiry even if cancel() lost the race
        self.fired = True
        self.function(*self.args)


class FakeTimerFactory:
    def __init__(self):
        self.timers = []

    def __call__(self, interval, function, args=()):
        timer = FakeTimer(interval, function, args)
        self.timers.append(timer)
        return timer

    @property
    def live(self):
        return [t for t in self.timers if not (t.cancelled or t.fired)]


class FakeOracle:
    def __init__(self):
        self.running = set()

    def is_running(self, name):
        return name in self.running

    def get_process_state(self, name):
        return ProcessState(running=name in self.running)


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def save_dir(tmp_path):
    d = tmp_path / "saves"
    d.mkdir()
    (d / "slot1.sav").write_text("level 3")
    return d


@pytest.fixture
def store(tmp_path, save_dir):
    s = StateStore(str(tmp_path / "data"))
    s.load()
    s.update(lambda state: state.entities.append(MonitoredEntity(
        id="celeste", title="Celeste", watch_root=str(save_dir), process_name="Celeste",
    )))
    return s


@pytest.fixture
def received():
    return []


@pytest.fixture
def events(received):
    channel = EventChannel()
    channel.subscribe(received.append)
    return channel


@pytest.fixture
def timers():
    return FakeTimerFactory()


@pytest.fixture
def oracle():
    return FakeOracle()


@pytest.fixture
def captured():
    return []


@pytest.fixture
def scheduler(store, oracle, events, timers, captured, tmp_path):
    return CaptureScheduler(
        state_store=store,
        oracle=oracle,
        locks=EntityLocks(),
        events=events,
        snapshot_dir=str(tmp_path / "snapshots"),
        on_snapshot=lambda entity, snap: captured.append(snap),
        settle_window=10.0,
        timer_factory=timers,
    )


# ---------------------------------------------------------------------------
# Debounce
# ---------------------------------------------------------------------------

class TestDebounce:
    def test_burst_collapses_to_one_pending_timer(self, scheduler, timers):
        for _ in range(5):
            scheduler.queue_capture("celeste")

        assert len(timers.timers) == 5
        assert len(timers.live) == 1
        assert all(t.started and t.daemon for t in timers.timers)
        assert timers.live[0].interval == 10.0
        assert scheduler.capture_state("celeste") == PENDING

    def test_only_latest_timer_captures(self, scheduler, timers, captured):
        for _ in range(3):
            scheduler.queue_capture("celeste")
        for timer in timers.timers:
            timer.fire()

        assert len(captured) == 1
        assert scheduler.capture_state("celeste") == IDLE

    def test_cancelled_timer_never_captures(self, scheduler, timers, captured):
        scheduler.queue_capture("celeste")
        assert scheduler.cancel("celeste") is True
        timers.timers[0].fire()

        assert captured == []
        assert scheduler.capture_state("celeste") == IDLE

    def test_cancel_without_pending(self, scheduler):
        assert scheduler.cancel("celeste") is False

    def test_cancel_all(self, scheduler, timers):
        scheduler.queue_capture("celeste")
        scheduler.queue_capture("other")
        scheduler.cancel_all()
        assert timers.live == []

    def test_entities_debounce_independently(self, scheduler, timers):
        scheduler.queue_capture("celeste")
        scheduler.queue_capture("other")
        assert len(timers.live) == 2


# ---------------------------------------------------------------------------
# Automatic capture
# ---------------------------------------------------------------------------

class TestAutomaticCapture:
    def test_capture_publishes_snapshot_event(self, scheduler, timers, captured, received):
        scheduler.queue_capture("celeste")
        timers.live[0].fire()

        assert len(captured) == 1
        kinds = [e.kind for e in received]
        assert EVENT_SNAPSHOT in kinds
        snap_event = next(e for e in received if e.kind == EVENT_SNAPSHOT)
        assert snap_event.snapshot.id == captured[0].id
        assert snap_event.entity_id == "celeste"

    def test_process_running_defers(self, scheduler, timers, oracle, captured, received):
        oracle.running.add("Celeste")
        scheduler.queue_capture("celeste")
        timers.live[0].fire()

        assert captured == []
        assert any(
            e.kind == EVENT_INFO and "still running" in e.message for e in received
        )
        # Rescheduled with a fresh timer
        assert len(timers.live) == 1
        assert len(timers.timers) == 2
        assert scheduler.capture_state("celeste") == PENDING

    def test_capture_after_process_exits(self, scheduler, timers, oracle, captured):
        oracle.running.add("Celeste")
        scheduler.queue_capture("celeste")
        timers.live[0].fire()
        oracle.running.clear()
        timers.live[0].fire()
        assert len(captured) == 1

    def test_no_files_emits_warning(self, scheduler, timers, save_dir, captured, received):
        (save_dir / "slot1.sav").unlink()
        scheduler.queue_capture("celeste")
        timers.live[0].fire()

        assert captured == []
        warnings = [e for e in received if e.kind == EVENT_WARNING]
        assert len(warnings) == 1
        assert "No files" in warnings[0].message

    def test_upload_failure_becomes_warning(self, store, oracle, events, timers,
                                            received, tmp_path):
        def failing_upload(entity, snap):
            raise NetworkError("drive unreachable")

        sched = CaptureScheduler(store, oracle, EntityLocks(), events,
                                 str(tmp_path / "snapshots"), on_snapshot=failing_upload,
                                 timer_factory=timers)
        sched.queue_capture("celeste")
        timers.live[0].fire()

        assert any(e.kind == EVENT_WARNING and "drive unreachable" in e.message
                   for e in received)
        assert sched.capture_state("celeste") == IDLE

    def test_unknown_entity_is_warning(self, scheduler, timers, received):
        scheduler.queue_capture("ghost")
        timers.live[0].fire()
        assert any(e.kind == EVENT_WARNING and e.entity_id == "ghost" for e in received)


# ---------------------------------------------------------------------------
# Manual capture
# ---------------------------------------------------------------------------

class TestManualCapture:
    def test_refused_while_running(self, scheduler, oracle, captured):
        oracle.running.add("Celeste")
        with pytest.raises(PreconditionError, match="still running"):
            scheduler.capture_now("celeste")
        assert captured == []

    def test_returns_snapshot(self, scheduler, captured):
        snap = scheduler.capture_now("celeste")
        assert snap.entity_id == "celeste"
        assert captured == [snap]

    def test_cancels_pending_timer(self, scheduler, timers, captured):
        scheduler.queue_capture("celeste")
        scheduler.capture_now("celeste")
        timers.timers[0].fire()
        assert len(captured) == 1

    def test_in_flight_while_uploading(self, store, oracle, events, timers, tmp_path):
        seen = []
        sched = None

        def record_state(entity, snap):
            seen.append(sched.capture_state(entity.id))

        sched = CaptureScheduler(store, oracle, EntityLocks(), events,
                                 str(tmp_path / "snapshots"), on_snapshot=record_state,
                                 timer_factory=timers)
        sched.capture_now("celeste")
        assert seen == [IN_FLIGHT]
        assert sched.capture_state("celeste") == IDLE
