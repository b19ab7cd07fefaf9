# Edit Monitor - workspace file change tracker
#
# Owns the change ledger. Watchdog reports workspace changes on its observer
# thread; the handler only stamps the time and posts the change to the
# scheduler, so the ledger is only ever touched on the scheduler's thread.
#
# Also holds the "AI active window": the interval around the latest
# assistant response in which edits are considered AI-driven.

import logging
from pathlib import Path
from typing import List, Optional

from watchdog.events import FileSystemEventHandler

from .ledger import ChangeLedger
from .normalizer import ActiveWindow, ChangeKind, FileEvent, LedgerStats
from .scheduler import Scheduler, ScheduledTask

logger = logging.getLogger(__name__)

DEFAULT_WINDOW_MS = 5_000
DEFAULT_CLEANUP_INTERVAL_MS = 5_000

# watchdog event_type -> ledger change kind
_KIND_BY_EVENT = {
    "created": ChangeKind.CREATE,
    "modified": ChangeKind.MODIFY,
    "deleted": ChangeKind.DELETE,
}


class WorkspaceHandler(FileSystemEventHandler):
    """Routes watchdog file events into the tracker."""

    def __init__(self, tracker: "FileChangeTracker"):
        self.tracker = tracker

    def on_any_event(self, fs_event):
        if fs_event.is_directory:
            return

        observed = self.tracker.scheduler.now_ms()

        if fs_event.event_type == "moved":
            self._post(fs_event.src_path, ChangeKind.DELETE, observed)
            self._post(fs_event.dest_path, ChangeKind.CREATE, observed)
            return

        kind = _KIND_BY_EVENT.get(fs_event.event_type)
        if kind is not None:
            self._post(fs_event.src_path, kind, observed)

    def _post(self, path, kind: str, observed: int):
        if isinstance(path, bytes):
            path = path.decode("utf-8", errors="replace")
        self.tracker.scheduler.post(
            lambda: self.tracker.record_change(path, kind, observed)
        )


class FileChangeTracker:
    """
    Records workspace file changes into a ChangeLedger and answers
    "which files changed around time t".
    """

    def __init__(
        self,
        ledger: ChangeLedger,
        scheduler: Scheduler,
        workspace_root: Optional[str] = None,
        cleanup_interval_ms: int = DEFAULT_CLEANUP_INTERVAL_MS,
    ):
        self.ledger = ledger
        self.scheduler = scheduler
        self.workspace = Path(workspace_root).resolve() if workspace_root else None
        self.cleanup_interval_ms = cleanup_interval_ms

        self._active_window: Optional[ActiveWindow] = None
        self._window_timer: Optional[ScheduledTask] = None
        self._cleanup_timer: Optional[ScheduledTask] = None
        self._stopped = False

    # ── Lifecycle ───────────────────────────────────────────

    def start(self):
        if self._cleanup_timer is not None:
            return
        self._stopped = False
        self._cleanup_timer = self.scheduler.schedule(
            self.cleanup_interval_ms, self.purge
        )
        logger.info("File change tracking started")

    def watch(self, observer) -> bool:
        """Schedule the workspace handler on a watchdog observer."""
        if self.workspace is None or not self.workspace.is_dir():
            logger.warning(f"No workspace folder at {self.workspace}, not watching files")
            return False
        observer.schedule(WorkspaceHandler(self), str(self.workspace), recursive=True)
        logger.info(f"Watching workspace: {self.workspace}")
        return True

    def stop(self):
        self._stopped = True
        self.scheduler.cancel(self._cleanup_timer)
        self.scheduler.cancel(self._window_timer)
        self._cleanup_timer = None
        self._window_timer = None
        self._active_window = None
        self.ledger.clear()
        logger.info("File change tracking stopped")

    # ── Recording ───────────────────────────────────────────

    def record_change(self, path: str, kind: str = ChangeKind.MODIFY,
                      timestamp: Optional[int] = None) -> bool:
        if self._stopped:
            return False
        if timestamp is None:
            timestamp = self.scheduler.now_ms()
        event = FileEvent(path=self._key(path), timestamp=timestamp, kind=kind)
        recorded = self.ledger.record(event)
        if recorded and self.in_active_window(timestamp):
            logger.debug(f"{event.path} changed inside the AI active window")
        return recorded

    def purge(self) -> int:
        return self.ledger.purge_expired(self.scheduler.now_ms())

    def _key(self, path: str) -> str:
        """Workspace-relative POSIX path when under the workspace."""
        if self.workspace is not None:
            try:
                return Path(path).resolve().relative_to(self.workspace).as_posix()
            except (ValueError, OSError):
                pass
        return path

    # ── AI active window ────────────────────────────────────

    def set_active_window(self, response_time: int, window_ms: int = DEFAULT_WINDOW_MS):
        """Mark [t - window, t + window] as AI-active; expires after 2 x window."""
        self._active_window = ActiveWindow(
            start=response_time - window_ms,
            end=response_time + window_ms,
        )
        logger.info(
            f"AI active window set: {self._active_window.start} ~ {self._active_window.end}"
        )

        self.scheduler.cancel(self._window_timer)
        self._window_timer = self.scheduler.call_later(window_ms * 2, self._clear_window)

    def _clear_window(self):
        self._active_window = None
        self._window_timer = None
        logger.debug("AI active window cleared")

    @property
    def active_window(self) -> Optional[ActiveWindow]:
        return self._active_window

    def in_active_window(self, timestamp: int) -> bool:
        return self._active_window is not None and self._active_window.contains(timestamp)

    # ── Queries ─────────────────────────────────────────────

    def get_changed_files(self, response_time: int,
                          window_ms: int = DEFAULT_WINDOW_MS) -> List[str]:
        files = self.ledger.query(response_time, window_ms)
        logger.debug(
            f"Found {len(files)} changed file(s) in "
            f"[{response_time - window_ms}, {response_time + window_ms}]"
        )
        return files

    def stats(self) -> LedgerStats:
        return self.ledger.stats()
