"""Tests for the AI response detector (polling, retry, debounce, re-entrancy)."""

import asyncio
from types import SimpleNamespace

import pytest

from edit_monitor.detector import AIResponseDetector, PollerState, StoreChangeHandler
from edit_monitor.emitter import Emitter
from edit_monitor.ledger import ChangeLedger
from edit_monitor.normalizer import Message, Role
from edit_monitor.parsers.cursor import (
    CursorStateReader,
    StoreCorruptError,
    StoreReadError,
    StoreUnavailableError,
)
from edit_monitor.tracker import FileChangeTracker

from conftest import ASSISTANT, bubble, write_store


class RecordingEmitter(Emitter):
    def __init__(self):
        super().__init__()
        self.notices = []

    def emit(self, notice):
        self.notices.append(notice)


class FakeReader:
    """Reader stand-in whose open() runs a hook, to script failures."""

    def __init__(self, owner, message=None, on_open=None):
        self.owner = owner
        self.message = message
        self.on_open = on_open
        self.closed = False

    def open(self):
        self.owner.opens += 1
        if self.on_open:
            self.on_open(self.owner.opens)

    def close(self):
        self.closed = True
        self.owner.closes += 1

    def latest_assistant_message(self):
        return self.message

    def latest_user_message(self, conversation_id):
        return None


class FakeStore:
    def __init__(self, message=None, on_open=None):
        self.message = message
        self.on_open = on_open
        self.opens = 0
        self.closes = 0

    def __call__(self):
        return FakeReader(self, self.message, self.on_open)


def ai_message(mid="m1", created_at=100_000):
    return Message(id=mid, conversation_id="c", role=Role.ASSISTANT,
                   text="response", created_at=created_at)


def make_detector(clock, factory, **kwargs):
    tracker = FileChangeTracker(ChangeLedger(), clock)
    emitter = RecordingEmitter()
    detector = AIResponseDetector(factory, tracker, emitter, clock, **kwargs)
    return detector, tracker, emitter


class TestCorrelation:

    def test_new_response_emits_matched_files(self, clock, store_path):
        detector, tracker, emitter = make_detector(
            clock, lambda: CursorStateReader(store_path)
        )
        tracker.record_change("edited.ts", timestamp=95_000)
        tracker.record_change("stale.ts", timestamp=60_000)

        assert detector.request_check() is True

        assert len(emitter.notices) == 1
        notice = emitter.notices[0]
        assert notice.message_id == "b4"
        assert notice.files == ["edited.ts"]
        assert (notice.window_start, notice.window_end) == (90_000, 110_000)
        assert notice.prompt_preview == "add tests please"
        assert tracker.active_window.start == 90_000
        assert detector.last_processed_id == "b4"
        assert detector.state is PollerState.IDLE

    def test_same_message_is_noop(self, clock, store_path):
        detector, tracker, emitter = make_detector(
            clock, lambda: CursorStateReader(store_path)
        )
        detector.request_check()
        clock.advance(20_000)                 # let the window expire
        assert tracker.active_window is None

        detector.request_check()
        assert len(emitter.notices) == 1
        assert tracker.active_window is None

    def test_reset_reprocesses_message(self, clock, store_path):
        detector, _, emitter = make_detector(clock, lambda: CursorStateReader(store_path))
        detector.request_check()
        detector.reset()
        assert detector.last_processed_id is None
        detector.request_check()
        assert [n.message_id for n in emitter.notices] == ["b4", "b4"]

    def test_newer_message_detected(self, clock, tmp_path, store_path):
        detector, _, emitter = make_detector(clock, lambda: CursorStateReader(store_path))
        detector.request_check()
        write_store(store_path, messages={("conv-a", "b5"): bubble(ASSISTANT, "more", 120_000)})
        detector.request_check()
        assert [n.message_id for n in emitter.notices] == ["b4", "b5"]

    def test_no_assistant_message(self, clock):
        store = FakeStore(message=None)
        detector, tracker, emitter = make_detector(clock, store)
        detector.request_check()
        assert emitter.notices == []
        assert tracker.active_window is None
        assert store.closes == 1

    def test_async_check(self, clock):
        detector, _, emitter = make_detector(clock, FakeStore(message=ai_message()))
        assert asyncio.run(detector.check()) is True
        assert len(emitter.notices) == 1

    def test_custom_radius(self, clock):
        detector, tracker, emitter = make_detector(
            clock, FakeStore(message=ai_message()), correlation_radius_ms=1_000
        )
        tracker.record_change("close.ts", timestamp=100_500)
        tracker.record_change("near.ts", timestamp=103_000)
        detector.request_check()
        assert emitter.notices[0].files == ["close.ts"]


class TestReentrancy:

    def test_overlapping_request_dropped(self, clock):
        results = []
        holder = {}

        def during_open(n):
            results.append(holder["detector"].request_check())

        store = FakeStore(message=ai_message(), on_open=during_open)
        detector, _, emitter = make_detector(clock, store)
        holder["detector"] = detector

        assert detector.request_check() is True
        assert results == [False]
        assert store.opens == 1
        assert len(emitter.notices) == 1

    def test_state_during_cycle(self, clock):
        seen = []
        holder = {}
        store = FakeStore(message=ai_message(),
                          on_open=lambda n: seen.append(holder["d"].state))
        detector, _, _ = make_detector(clock, store)
        holder["d"] = detector
        detector.request_check()
        assert seen == [PollerState.CHECKING]
        assert detector.state is PollerState.IDLE


class TestRetry:

    def test_corrupt_store_retried_with_backoff(self, clock):
        opened_at = []

        def flaky(n):
            opened_at.append(clock.now_ms())
            if n < 3:
                raise StoreCorruptError("database disk image is malformed")

        store = FakeStore(message=ai_message(), on_open=flaky)
        detector, _, emitter = make_detector(clock, store)
        detector.request_check()

        assert opened_at == [100_000, 100_200, 100_600]
        assert store.closes == 3
        assert len(emitter.notices) == 1
        assert detector.last_error is None

    def test_gives_up_after_max_retries(self, clock):
        def always(n):
            raise StoreCorruptError("locked")

        store = FakeStore(message=ai_message(), on_open=always)
        detector, _, emitter = make_detector(clock, store)
        detector.request_check()

        assert store.opens == 3
        assert store.closes == 3
        assert isinstance(detector.last_error, StoreCorruptError)
        assert detector.state is PollerState.IDLE
        assert emitter.notices == []

    @pytest.mark.parametrize("error", [
        StoreReadError("no such table"),
        StoreUnavailableError("missing"),
        ValueError("unexpected"),
    ])
    def test_other_errors_not_retried(self, clock, error):
        def fail(n):
            raise error

        store = FakeStore(message=ai_message(), on_open=fail)
        detector, _, _ = make_detector(clock, store)
        detector.request_check()
        assert store.opens == 1
        assert store.closes == 1
        assert detector.last_error is error

    def test_failure_does_not_block_next_cycle(self, clock):
        def first_fails(n):
            if n == 1:
                raise StoreReadError("boom")

        store = FakeStore(message=ai_message(), on_open=first_fails)
        detector, _, emitter = make_detector(clock, store)
        detector.request_check()
        assert emitter.notices == []
        assert detector.request_check() is True
        assert len(emitter.notices) == 1

    def test_real_corrupt_file(self, clock, tmp_path):
        path = tmp_path / "state.vscdb"
        path.write_bytes(b"garbage" * 200)
        detector, _, _ = make_detector(
            clock, lambda: CursorStateReader(str(path)), max_retries=2
        )
        detector.request_check()
        assert isinstance(detector.last_error, StoreCorruptError)
        assert clock.now_ms() == 100_200


class TestScheduling:

    def test_start_checks_now_and_every_interval(self, clock):
        store = FakeStore(message=None)
        detector, _, _ = make_detector(clock, store)
        detector.start()
        assert store.opens == 1
        clock.advance(15_000)
        assert store.opens == 4

    def test_stop_cancels_timers(self, clock):
        store = FakeStore(message=None)
        detector, _, _ = make_detector(clock, store)
        detector.start()
        detector.on_store_changed()
        detector.stop()
        clock.advance(60_000)
        assert store.opens == 1
        assert clock.pending == 0
        assert not detector.is_running

    def test_store_hint_after_stop_ignored(self, clock, store_path):
        detector, _, emitter = make_detector(clock, lambda: CursorStateReader(store_path))
        detector.start()
        detector.reset()
        detector.stop()

        detector.on_store_changed()
        clock.advance(1_000)
        assert [n.message_id for n in emitter.notices] == ["b4"]
        assert clock.pending == 0

    def test_stop_during_cycle_discards_result(self, clock):
        holder = {}

        def stop_then_fail(n):
            if n == 1:
                holder["d"].stop()
                raise StoreCorruptError("busy")

        store = FakeStore(message=ai_message(), on_open=stop_then_fail)
        detector, tracker, emitter = make_detector(clock, store)
        holder["d"] = detector
        detector.start()

        assert store.opens == 2
        assert emitter.notices == []
        assert tracker.active_window is None
        assert detector.last_processed_id is None
        assert detector.state is PollerState.IDLE

    def test_store_hints_debounced(self, clock):
        store = FakeStore(message=None)
        detector, _, _ = make_detector(clock, store)
        detector.start()
        assert store.opens == 1
        for _ in range(3):
            detector.on_store_changed()
            clock.advance(200)
        assert store.opens == 1
        clock.advance(299)                    # last hint at t+400, fires at t+900
        assert store.opens == 1
        clock.advance(1)
        assert store.opens == 2

    def test_store_change_handler_filters(self, clock, tmp_path):
        store = FakeStore(message=None)
        detector, _, _ = make_detector(clock, store)
        handler = StoreChangeHandler(detector, "state.vscdb")
        detector.start()

        def event(event_type, name, is_directory=False):
            return SimpleNamespace(event_type=event_type, is_directory=is_directory,
                                   src_path=str(tmp_path / name))

        handler.on_any_event(event("opened", "state.vscdb"))
        handler.on_any_event(event("modified", "other.json"))
        handler.on_any_event(event("modified", "state.vscdb", is_directory=True))
        clock.advance(1_000)
        assert store.opens == 1

        handler.on_any_event(event("modified", "state.vscdb-wal"))
        clock.advance(500)
        assert store.opens == 2

    def test_watch_store_directory(self, clock, tmp_path):
        scheduled = []
        observer = SimpleNamespace(schedule=lambda h, p, recursive: scheduled.append((p, recursive)))
        detector, _, _ = make_detector(clock, FakeStore())
        assert detector.watch(observer, str(tmp_path / "state.vscdb")) is True
        assert scheduled == [(str(tmp_path), False)]
        assert detector.watch(observer, str(tmp_path / "missing" / "state.vscdb")) is False
