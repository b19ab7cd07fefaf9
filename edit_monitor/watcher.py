#!/usr/bin/env python3
"""
Edit Monitor - main entry point

Watches a workspace for file edits and Cursor's chat store for new AI
responses. Each new assistant response is reported with the files edited
within a few seconds of it.

Usage:
    edit-monitor                                   # default paths
    edit-monitor --workspace ~/myproject           # specify workspace
    edit-monitor --notify http://localhost:8080/api/events
    edit-monitor --inspect                         # dump store contents and exit

While running: Ctrl+C stops, SIGHUP resets the last processed response.
"""

import argparse
import asyncio
import logging
import signal
import sys
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

from watchdog.observers import Observer

from .config import Config
from .detector import AIResponseDetector
from .emitter import Emitter
from .ledger import ChangeLedger
from .parsers.cursor import CursorStateReader, StoreError, StoreUnavailableError
from .scheduler import AsyncioScheduler, Scheduler
from .tracker import FileChangeTracker

logger = logging.getLogger(__name__)


# ── Monitor context ────────────────────────────────────────────────────────

@dataclass
class MonitorContext:
    """Every long-lived component, built once by build_context()."""

    config: Config
    scheduler: Scheduler
    ledger: ChangeLedger
    tracker: FileChangeTracker
    detector: AIResponseDetector
    emitter: Emitter
    observer: Optional[object] = None

    def reader(self) -> CursorStateReader:
        return CursorStateReader(self.config.cursor_db_path)

    def start(self):
        """
        Validate the store, then start tracking and polling.
        Raises StoreUnavailableError if the Cursor DB is missing.
        """
        with self.reader():
            pass

        self.tracker.start()
        self.detector.start()

        if self.observer is not None:
            watched = self.tracker.watch(self.observer)
            watched = self.detector.watch(self.observer, self.config.cursor_db_path) or watched
            if watched:
                self.observer.start()

    def stop(self):
        # Observer first so no watchdog event is posted after the ledger is cleared.
        if self.observer is not None and self.observer.is_alive():
            self.observer.stop()
            self.observer.join()
        self.detector.stop()
        self.tracker.stop()

    def reset(self):
        self.detector.reset()


def build_context(cfg: Config, scheduler: Scheduler, observer=None) -> MonitorContext:
    ledger = ChangeLedger(
        retention_ms=cfg.retention_ms,
        ignore_patterns=cfg.ignore_patterns,
    )
    tracker = FileChangeTracker(
        ledger,
        scheduler,
        workspace_root=cfg.workspace_root,
        cleanup_interval_ms=cfg.cleanup_interval_ms,
    )
    emitter = Emitter(notify_url=cfg.notify_url, jsonl_path=cfg.jsonl_path)
    detector = AIResponseDetector(
        reader_factory=lambda: CursorStateReader(cfg.cursor_db_path),
        tracker=tracker,
        emitter=emitter,
        scheduler=scheduler,
        poll_interval_ms=cfg.poll_interval_ms,
        debounce_ms=cfg.store_debounce_ms,
        correlation_radius_ms=cfg.correlation_radius_ms,
        max_retries=cfg.max_retries,
        retry_backoff_ms=cfg.retry_backoff_ms,
    )
    return MonitorContext(
        config=cfg,
        scheduler=scheduler,
        ledger=ledger,
        tracker=tracker,
        detector=detector,
        emitter=emitter,
        observer=observer,
    )


# ── Run loop ───────────────────────────────────────────────────────────────

async def run(cfg: Config):
    """Run the monitor until interrupted."""
    scheduler = AsyncioScheduler()
    ctx = build_context(cfg, scheduler, observer=Observer())
    ctx.start()

    loop = asyncio.get_running_loop()
    stopped = asyncio.Event()
    try:
        loop.add_signal_handler(signal.SIGTERM, stopped.set)
        loop.add_signal_handler(signal.SIGHUP, ctx.reset)
    except (NotImplementedError, AttributeError):
        pass  # no loop signal handlers on Windows

    print(f"edit-monitor running. Workspace: {cfg.workspace_root}. Ctrl+C to stop.\n")
    try:
        await stopped.wait()
    finally:
        print("\nStopping...")
        ctx.stop()
        await scheduler.drain()


def _fmt_ms(ms: Optional[int]) -> str:
    if ms is None:
        return "?"
    return datetime.fromtimestamp(ms / 1000, tz=timezone.utc).isoformat()[:19]


def inspect_store(db_path: str):
    """Print a summary of the chat store: conversations, messages, latest response."""
    with CursorStateReader(db_path) as reader:
        print(f"DB Path: {db_path}")
        conversations = reader.list_conversations()
        print(f"Conversations: {len(conversations)}")
        if not conversations:
            return

        for i, c in enumerate(conversations[-5:], 1):
            print(f"  {i}. {c.id[:8]}... created {_fmt_ms(c.created_at)}")

        newest = conversations[-1]
        messages = reader.list_messages(newest.id)
        users = [m for m in messages if not m.is_assistant]
        ais = [m for m in messages if m.is_assistant]
        print(f"\nLatest conversation {newest.id}: {len(messages)} message(s) "
              f"({len(users)} user, {len(ais)} AI)")

        latest = reader.latest_assistant_message()
        if latest is None:
            print("\nNo AI responses found.")
            return
        print("\nLatest AI response:")
        print(f"  Conversation: {latest.conversation_id}")
        print(f"  Message:      {latest.id}")
        print(f"  Created:      {_fmt_ms(latest.created_at)}")
        print(f"  Text:         {latest.preview(200)}")


# ── Main ───────────────────────────────────────────────────────────────────

def main(argv=None):
    ap = argparse.ArgumentParser(
        description="Edit Monitor - attribute workspace edits to Cursor AI responses"
    )
    ap.add_argument(
        "--workspace", default=None,
        help="Workspace root to monitor (default: current directory)",
    )
    ap.add_argument(
        "--db", default=None,
        help="Path to Cursor's state.vscdb (default: auto-detected)",
    )
    ap.add_argument(
        "--notify", default=None,
        help="HTTP endpoint for notices (e.g. http://localhost:8080/api/events), or 'off'",
    )
    ap.add_argument(
        "--jsonl", default=None,
        help="JSONL log path (default: ~/.local/share/edit-monitor/attributions.jsonl)",
    )
    ap.add_argument(
        "--config", default=None,
        help="Path to config.yaml",
    )
    ap.add_argument(
        "--inspect", action="store_true",
        help="Print a summary of the chat store and exit",
    )
    ap.add_argument(
        "-v", "--verbose", action="store_true",
        help="Debug logging",
    )
    args = ap.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
        handlers=[logging.StreamHandler(sys.stdout)],
    )

    cfg = Config.load(args.config)

    # CLI overrides
    if args.workspace:
        cfg.workspace_root = args.workspace
    if args.db:
        cfg.cursor_db_path = args.db
    if args.notify == "off":
        cfg.notify_url = None
    elif args.notify:
        cfg.notify_url = args.notify
    if args.jsonl:
        cfg.jsonl_path = args.jsonl

    cfg.resolve_paths()

    try:
        if args.inspect:
            inspect_store(cfg.cursor_db_path)
            return 0
        asyncio.run(run(cfg))
    except StoreUnavailableError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    except StoreError as e:
        print(f"Error reading Cursor DB: {e}", file=sys.stderr)
        return 1
    except KeyboardInterrupt:
        pass
    return 0


if __name__ == "__main__":
    sys.exit(main())
