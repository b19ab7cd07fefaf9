# Edit Monitor - timer scheduling
#
# Components never touch the event loop directly. They ask a Scheduler to
# run tasks periodically or once after a delay, and to hand work over from
# other threads (watchdog callbacks). Two implementations:
#
#   AsyncioScheduler - real wall clock, backed by the running asyncio loop
#   ManualScheduler  - simulated clock driven by advance(), for tests and
#                      offline replay
#
# A task is a zero-argument callable. If it returns an awaitable, the
# scheduler runs that awaitable as a task of its own.

import asyncio
import heapq
import inspect
import itertools
import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, List, Optional, Set

logger = logging.getLogger(__name__)

Task = Callable[[], Any]


def wall_clock_ms() -> int:
    return int(time.time() * 1000)


@dataclass(eq=False)
class ScheduledTask:
    """Handle returned by schedule() / call_later(); pass it to cancel()."""
    task: Task
    due: int                           # epoch ms of the next run
    interval: Optional[int] = None     # None = one-shot
    cancelled: bool = False
    _timer: Any = field(default=None, repr=False)

    @property
    def repeating(self) -> bool:
        return self.interval is not None


class Scheduler(ABC):
    """Clock and timer interface shared by the tracker and the detector."""

    @abstractmethod
    def now_ms(self) -> int:
        """Current time in epoch milliseconds."""

    @abstractmethod
    def schedule(self, interval_ms: int, task: Task) -> ScheduledTask:
        """Run task every interval_ms, first run one interval from now."""

    @abstractmethod
    def call_later(self, delay_ms: int, task: Task) -> ScheduledTask:
        """Run task once after delay_ms."""

    @abstractmethod
    def cancel(self, handle: Optional[ScheduledTask]):
        """Cancel a pending task. Cancelling twice or passing None is a no-op."""

    @abstractmethod
    def post(self, task: Task):
        """Run task on the scheduler's thread. Safe to call from any thread."""

    @abstractmethod
    def spawn(self, awaitable: Awaitable):
        """Run a coroutine cooperatively without waiting for it."""

    @abstractmethod
    async def sleep(self, delay_ms: int):
        """Suspend the calling coroutine for delay_ms."""

    def _invoke(self, task: Task):
        result = task()
        if inspect.isawaitable(result):
            self.spawn(result)


# ═══════════════════════════════════════════════════════════════
# asyncio event loop
# ═══════════════════════════════════════════════════════════════

class AsyncioScheduler(Scheduler):
    """Scheduler backed by an asyncio event loop (the running one by default)."""

    def __init__(self, loop: Optional[asyncio.AbstractEventLoop] = None):
        self._loop = loop or asyncio.get_running_loop()
        self._tasks: Set[asyncio.Task] = set()

    def now_ms(self) -> int:
        return wall_clock_ms()

    def schedule(self, interval_ms: int, task: Task) -> ScheduledTask:
        handle = ScheduledTask(task=task, due=self.now_ms() + interval_ms,
                               interval=interval_ms)

        def _fire():
            if handle.cancelled:
                return
            handle.due = self.now_ms() + interval_ms
            handle._timer = self._loop.call_later(interval_ms / 1000, _fire)
            self._run_safely(task)

        handle._timer = self._loop.call_later(interval_ms / 1000, _fire)
        return handle

    def call_later(self, delay_ms: int, task: Task) -> ScheduledTask:
        handle = ScheduledTask(task=task, due=self.now_ms() + delay_ms)

        def _fire():
            if not handle.cancelled:
                handle.cancelled = True
                self._run_safely(task)

        handle._timer = self._loop.call_later(delay_ms / 1000, _fire)
        return handle

    def cancel(self, handle: Optional[ScheduledTask]):
        if handle is None:
            return
        handle.cancelled = True
        if handle._timer is not None:
            handle._timer.cancel()
            handle._timer = None

    def post(self, task: Task):
        self._loop.call_soon_threadsafe(self._run_safely, task)

    def spawn(self, awaitable: Awaitable):
        t = asyncio.ensure_future(awaitable, loop=self._loop)
        self._tasks.add(t)
        t.add_done_callback(self._task_done)

    async def sleep(self, delay_ms: int):
        await asyncio.sleep(delay_ms / 1000)

    async def drain(self):
        """Wait for every spawned task to finish."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def _run_safely(self, task: Task):
        try:
            self._invoke(task)
        except Exception:
            logger.exception("Scheduled task failed")

    def _task_done(self, t: asyncio.Task):
        self._tasks.discard(t)
        if not t.cancelled() and t.exception() is not None:
            logger.error("Background task failed", exc_info=t.exception())


# ═══════════════════════════════════════════════════════════════
# Simulated clock
# ═══════════════════════════════════════════════════════════════

class ManualScheduler(Scheduler):
    """
    Deterministic scheduler whose clock only moves when advance() is called.

    Timers fire in due order, ties in scheduling order. sleep() advances the
    clock itself, so coroutines that only await sleep() run to completion
    synchronously inside spawn().
    """

    def __init__(self, start_ms: int = 0):
        self._now = start_ms
        self._heap: List[tuple] = []
        self._seq = itertools.count()

    def now_ms(self) -> int:
        return self._now

    @property
    def pending(self) -> int:
        return sum(1 for _, _, h in self._heap if not h.cancelled)

    def schedule(self, interval_ms: int, task: Task) -> ScheduledTask:
        handle = ScheduledTask(task=task, due=self._now + interval_ms,
                               interval=interval_ms)
        self._push(handle)
        return handle

    def call_later(self, delay_ms: int, task: Task) -> ScheduledTask:
        handle = ScheduledTask(task=task, due=self._now + delay_ms)
        self._push(handle)
        return handle

    def cancel(self, handle: Optional[ScheduledTask]):
        if handle is not None:
            handle.cancelled = True

    def post(self, task: Task):
        self._invoke(task)

    def spawn(self, awaitable: Awaitable):
        coro = awaitable.__await__()
        try:
            coro.send(None)
        except StopIteration:
            return
        coro.close()
        raise RuntimeError("coroutine suspended outside simulated time")

    async def sleep(self, delay_ms: int):
        self.advance(delay_ms)

    def advance(self, ms: int):
        """Move the clock forward by ms, firing every timer that falls due."""
        target = self._now + ms
        while self._heap and self._heap[0][0] <= target:
            due, _, handle = heapq.heappop(self._heap)
            if handle.cancelled:
                continue
            self._now = max(self._now, due)
            if handle.repeating:
                handle.due = due + handle.interval
                self._push(handle)
            else:
                handle.cancelled = True
            self._invoke(handle.task)
        self._now = max(self._now, target)

    def _push(self, handle: ScheduledTask):
        heapq.heappush(self._heap, (handle.due, next(self._seq), handle))
