# Edit Monitor - AI response detector
#
# Polls Cursor's chat store for the newest assistant message. When it
# changes, the files edited around the response time are looked up in the
# tracker and reported as an AttributionNotice.
#
#   IDLE ──tick / store hint──► CHECKING ──no new message──► IDLE
#                                  │
#                                  └──new message──► PROCESSING ──► IDLE
#
# Only one cycle runs at a time: triggers that arrive while a cycle is in
# flight are dropped, not queued. Every cycle ends in IDLE, whatever
# happened during it.

import logging
from enum import Enum
from pathlib import Path
from typing import Callable, Optional

from watchdog.events import FileSystemEventHandler

from .emitter import Emitter
from .normalizer import AttributionNotice, Message
from .parsers.cursor import CursorStateReader, StoreCorruptError
from .scheduler import Scheduler, ScheduledTask
from .tracker import FileChangeTracker

logger = logging.getLogger(__name__)

ReaderFactory = Callable[[], CursorStateReader]

_WRITE_EVENTS = frozenset({"created", "modified", "moved", "deleted"})


class PollerState(str, Enum):
    IDLE = "idle"
    CHECKING = "checking"
    PROCESSING = "processing"


class StoreChangeHandler(FileSystemEventHandler):
    """Forwards writes to state.vscdb (and its -wal/-journal) as a debounced hint."""

    def __init__(self, detector: "AIResponseDetector", db_name: str):
        self.detector = detector
        self.db_name = db_name

    def on_any_event(self, fs_event):
        # Our own read-only opens show up as opened/closed events; skip them.
        if fs_event.is_directory or fs_event.event_type not in _WRITE_EVENTS:
            return
        path = fs_event.src_path
        if isinstance(path, bytes):
            path = path.decode("utf-8", errors="replace")
        if Path(path).name.startswith(self.db_name):
            self.detector.scheduler.post(self.detector.on_store_changed)


class AIResponseDetector:
    """
    Response poller. Construct with a reader factory so each attempt gets a
    fresh handle that is closed before the attempt ends.
    """

    def __init__(
        self,
        reader_factory: ReaderFactory,
        tracker: FileChangeTracker,
        emitter: Emitter,
        scheduler: Scheduler,
        poll_interval_ms: int = 5_000,
        debounce_ms: int = 500,
        correlation_radius_ms: int = 10_000,
        max_retries: int = 3,
        retry_backoff_ms: int = 200,
    ):
        self.reader_factory = reader_factory
        self.tracker = tracker
        self.emitter = emitter
        self.scheduler = scheduler
        self.poll_interval_ms = poll_interval_ms
        self.debounce_ms = debounce_ms
        self.correlation_radius_ms = correlation_radius_ms
        self.max_retries = max_retries
        self.retry_backoff_ms = retry_backoff_ms

        self.state = PollerState.IDLE
        self.last_processed_id: Optional[str] = None
        self.last_error: Optional[Exception] = None

        self._poll_timer: Optional[ScheduledTask] = None
        self._debounce_timer: Optional[ScheduledTask] = None
        self._running = False
        self._generation = 0

    # ── Commands ────────────────────────────────────────────

    def start(self):
        if self._running:
            return
        self._running = True
        logger.info(f"Starting polling ({self.poll_interval_ms}ms interval)")
        self._poll_timer = self.scheduler.schedule(self.poll_interval_ms, self.request_check)
        self.request_check()

    def stop(self):
        logger.info("Stopping polling")
        self._running = False
        self._generation += 1
        self.scheduler.cancel(self._poll_timer)
        self.scheduler.cancel(self._debounce_timer)
        self._poll_timer = None
        self._debounce_timer = None

    def reset(self):
        """Forget the last processed message so the next cycle re-evaluates it."""
        logger.info("Resetting last processed message id")
        self.last_processed_id = None

    @property
    def is_running(self) -> bool:
        return self._running

    def watch(self, observer, db_path: str) -> bool:
        """Watch the store's directory for writes to the database files."""
        db = Path(db_path)
        if not db.parent.is_dir():
            logger.warning(f"Store directory {db.parent} not found, polling only")
            return False
        observer.schedule(StoreChangeHandler(self, db.name), str(db.parent), recursive=False)
        return True

    # ── Triggers ────────────────────────────────────────────

    def on_store_changed(self):
        """Store write hint; bursts collapse into one check after the debounce delay."""
        if not self._running:
            return
        self.scheduler.cancel(self._debounce_timer)
        self._debounce_timer = self.scheduler.call_later(self.debounce_ms, self._debounced_check)

    def _debounced_check(self):
        self._debounce_timer = None
        if not self._running:
            return
        logger.debug("Store changed, checking for new responses")
        self.request_check()

    def request_check(self) -> bool:
        """Start a cycle in the background. Returns False if one is already active."""
        if not self._enter_checking():
            return False
        self.scheduler.spawn(self._cycle())
        return True

    async def check(self) -> bool:
        """Run one cycle to completion. Returns False if one is already active."""
        if not self._enter_checking():
            return False
        await self._cycle()
        return True

    def _enter_checking(self) -> bool:
        if self.state is not PollerState.IDLE:
            logger.debug(f"Already {self.state.value}, skipping check")
            return False
        self.state = PollerState.CHECKING
        return True

    # ── Cycle ───────────────────────────────────────────────

    async def _cycle(self):
        generation = self._generation
        try:
            message, prompt = await self._fetch_with_retry()
            if message is None:
                return
            if generation != self._generation:
                logger.debug("Stopped during check, discarding result")
                return
            self.state = PollerState.PROCESSING
            self._process(message, prompt)
            self.last_processed_id = message.id
            self.last_error = None
        except Exception as e:
            self.last_error = e
            logger.error(f"Error checking for new responses: {e}")
        finally:
            self.state = PollerState.IDLE

    async def _fetch_with_retry(self):
        """
        Return (new assistant message, latest user prompt) or (None, None).
        Corrupt/locked store errors are retried with linear backoff; anything
        else propagates on the first attempt.
        """
        for attempt in range(1, self.max_retries + 1):
            reader = self.reader_factory()
            try:
                reader.open()
                latest = reader.latest_assistant_message()
                if latest is None:
                    logger.debug("No AI messages found")
                    return None, None
                if latest.id == self.last_processed_id:
                    return None, None
                logger.info(f"New AI response detected: {latest.id}")
                prompt = reader.latest_user_message(latest.conversation_id)
                return latest, prompt
            except StoreCorruptError as e:
                if attempt >= self.max_retries:
                    raise
                delay = attempt * self.retry_backoff_ms
                logger.warning(
                    f"Store unreadable (attempt {attempt}/{self.max_retries}), "
                    f"retrying in {delay}ms: {e}"
                )
            finally:
                reader.close()
            await self.scheduler.sleep(delay)
        return None, None

    def _process(self, message: Message, prompt: Optional[Message]):
        response_time = message.created_at
        radius = self.correlation_radius_ms

        self.tracker.set_active_window(response_time, radius)
        files = self.tracker.get_changed_files(response_time, radius)

        notice = AttributionNotice(
            message_id=message.id,
            conversation_id=message.conversation_id,
            response_at=response_time,
            window_start=response_time - radius,
            window_end=response_time + radius,
            files=files,
            response_preview=message.preview() or None,
            prompt_preview=prompt.preview() if prompt else None,
            model_type=message.model_type,
        )

        stats = self.tracker.stats()
        logger.info(
            f"{notice.summary}; {stats.tracked_path_count} file(s) tracked, "
            f"{stats.total_event_count} change(s) total"
        )
        self.emitter.emit(notice)
