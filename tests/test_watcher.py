"""Tests for the monitor context and the CLI entry point."""

import pytest

from edit_monitor.config import DB_PATH_ENV, Config
from edit_monitor.detector import PollerState
from edit_monitor.parsers.cursor import StoreUnavailableError
from edit_monitor.watcher import build_context, main


@pytest.fixture(autouse=True)
def no_db_env(monkeypatch):
    monkeypatch.delenv(DB_PATH_ENV, raising=False)


def make_config(tmp_path, db_path):
    cfg = Config(
        cursor_db_path=db_path,
        workspace_root=str(tmp_path),
        jsonl_path=str(tmp_path / "out" / "attributions.jsonl"),
    )
    cfg.resolve_paths()
    return cfg


class TestMonitorContext:

    def test_wiring_follows_config(self, tmp_path, clock, store_path):
        cfg = make_config(tmp_path, store_path)
        cfg.retention_ms = 1_000
        ctx = build_context(cfg, clock)
        assert ctx.tracker.ledger is ctx.ledger
        assert ctx.detector.tracker is ctx.tracker
        assert ctx.detector.emitter is ctx.emitter
        assert ctx.ledger.retention_ms == 1_000
        assert ctx.emitter.jsonl_path == cfg.jsonl_path

    def test_missing_store_is_fatal_at_start(self, tmp_path, clock):
        ctx = build_context(make_config(tmp_path, str(tmp_path / "none.vscdb")), clock)
        with pytest.raises(StoreUnavailableError):
            ctx.start()
        assert not ctx.detector.is_running
        assert clock.pending == 0

    def test_start_correlates_and_stop_tears_down(self, tmp_path, clock, store_path, capsys):
        cfg = make_config(tmp_path, store_path)
        ctx = build_context(cfg, clock)
        ctx.tracker.record_change(str(tmp_path / "src" / "main.py"), timestamp=99_000)

        ctx.start()
        assert ctx.detector.last_processed_id == "b4"
        assert "AI response: 1 file(s) changed" in capsys.readouterr().out
        assert (tmp_path / "out" / "attributions.jsonl").exists()

        ctx.reset()
        assert ctx.detector.last_processed_id is None

        ctx.stop()
        assert not ctx.detector.is_running
        assert ctx.detector.state is PollerState.IDLE
        assert ctx.ledger.stats().tracked_path_count == 0
        assert clock.pending == 0


    def test_observer_stopped_before_components(self, tmp_path, clock, store_path):
        seen = []

        class Observer:
            def schedule(self, handler, path, recursive):
                pass

            def start(self):
                pass

            def is_alive(self):
                return True

            def stop(self):
                seen.append(("stop", ctx.detector.is_running, len(ctx.ledger)))

            def join(self):
                seen.append(("join", ctx.detector.is_running, len(ctx.ledger)))

        ctx = build_context(make_config(tmp_path, store_path), clock, observer=Observer())
        ctx.start()
        ctx.tracker.record_change(str(tmp_path / "a.py"))
        ctx.stop()

        assert seen == [("stop", True, 1), ("join", True, 1)]
        assert ctx.tracker.record_change(str(tmp_path / "late.py")) is False
        assert len(ctx.ledger) == 0


class TestMain:

    def test_inspect(self, store_path, tmp_path, capsys):
        rc = main(["--inspect", "--db", store_path, "--config", str(tmp_path / "none.yaml")])
        out = capsys.readouterr().out
        assert rc == 0
        assert "Conversations: 2" in out
        assert "Latest AI response:" in out
        assert "b4" in out

    def test_missing_db_exits_with_error(self, tmp_path, capsys):
        rc = main(["--inspect", "--db", str(tmp_path / "none.vscdb"),
                   "--config", str(tmp_path / "none.yaml")])
        assert rc == 1
        assert "not found" in capsys.readouterr().err

    def test_run_with_missing_db(self, tmp_path, capsys):
        rc = main(["--db", str(tmp_path / "none.vscdb"), "--workspace", str(tmp_path),
                   "--config", str(tmp_path / "none.yaml"), "--notify", "off"])
        assert rc == 1
