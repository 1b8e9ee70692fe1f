"""
Timer scheduling for the session tracker.

AsyncioScheduler runs callbacks on the event loop. VirtualScheduler keeps a
virtual clock that only moves when advance() is awaited, so ping and idle
timing can be exercised without sleeping.
"""
import asyncio
import heapq
import inspect
import itertools
import time
from typing import Any, Callable, List, Optional, Protocol, Set, Tuple

import structlog

logger = structlog.get_logger(__name__)

Callback = Callable[[], Any]


class TimerHandle:
    def __init__(self, when: float, callback: Callback):
        self.when = when
        self.callback = callback
        self.cancelled = False
        self._loop_handle: Optional[asyncio.TimerHandle] = None

    def cancel(self) -> None:
        self.cancelled = True
        if self._loop_handle is not None:
            self._loop_handle.cancel()


class Scheduler(Protocol):
    def now(self) -> float:
        ...

    def call_later(self, delay: float, callback: Callback) -> TimerHandle:
        ...

    async def aclose(self) -> None:
        ...


class AsyncioScheduler:
    """Callbacks may be plain functions or coroutine functions."""

    def __init__(self, loop: Optional[asyncio.AbstractEventLoop] = None):
        self._loop = loop
        self._tasks: Set[asyncio.Task] = set()

    @property
    def loop(self) -> asyncio.AbstractEventLoop:
        return self._loop or asyncio.get_running_loop()

    def now(self) -> float:
        return time.monotonic()

    def call_later(self, delay: float, callback: Callback) -> TimerHandle:
        handle = TimerHandle(self.now() + delay, callback)
        handle._loop_handle = self.loop.call_later(delay, self._fire, handle)
        return handle

    def _fire(self, handle: TimerHandle) -> None:
        if handle.cancelled:
            return
        result = handle.callback()
        if inspect.isawaitable(result):
            task = asyncio.ensure_future(result)
            self._tasks.add(task)
            task.add_done_callback(self._task_done)

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error("scheduled_callback_failed", error=str(task.exception()))

    async def aclose(self) -> None:
        for task in list(self._tasks):
            task.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks.clear()


class VirtualScheduler:
    """Deterministic clock for tests. Timers fire in order during advance()."""

    def __init__(self, start: float = 0.0):
        self._now = start
        self._queue: List[Tuple[float, int, TimerHandle]] = []
        self._seq = itertools.count()

    def now(self) -> float:
        return self._now

    def call_later(self, delay: float, callback: Callback) -> TimerHandle:
        handle = TimerHandle(self._now + max(0.0, delay), callback)
        heapq.heappush(self._queue, (handle.when, next(self._seq), handle))
        return handle

    @property
    def pending(self) -> int:
        return sum(1 for _, _, h in self._queue if not h.cancelled)

    async def advance(self, seconds: float) -> None:
        target = self._now + seconds
        while self._queue and self._queue[0][0] <= target:
            when, _, handle = heapq.heappop(self._queue)
            if handle.cancelled:
                continue
            self._now = when
            result = handle.callback()
            if inspect.isawaitable(result):
                await result
        self._now = target

    async def aclose(self) -> None:
        for _, _, handle in self._queue:
            handle.cancel()
        self._queue.clear()
