"""
Clock and timer abstraction.

Session expiry, the cleanup sweep and health polling are all driven through a
Scheduler so that production code runs on the asyncio loop while tests can
move a virtual clock forward deterministically.
"""

import asyncio
import heapq
import itertools
import logging
from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, List, Optional, Set

logger = logging.getLogger(__name__)


class TimerHandle:
    """Cancellable reference to a scheduled callback"""

    def __init__(self, name: str = ""):
        self.name = name
        self.cancelled = False
        self._on_cancel: Optional[Callable[[], None]] = None

    def cancel(self) -> None:
        if self.cancelled:
            return
        self.cancelled = True
        if self._on_cancel:
            self._on_cancel()


class Scheduler(ABC):
    """Source of current time plus one-shot and periodic timers"""

    @abstractmethod
    def now(self) -> datetime:
        ...

    @abstractmethod
    def call_later(self, delay: float, callback: Callable[[], Any], name: str = "") -> TimerHandle:
        ...

    @abstractmethod
    def call_every(self, interval: float, callback: Callable[[], Any], name: str = "") -> TimerHandle:
        ...

    def seconds_since(self, moment: datetime) -> float:
        return (self.now() - moment).total_seconds()

    async def drain(self) -> None:
        """Wait for timer callbacks that are still running"""
        return None


class AsyncioScheduler(Scheduler):
    """Timers on the running event loop; coroutine callbacks run as tasks"""

    def __init__(self):
        self._tasks: Set[asyncio.Task] = set()

    def now(self) -> datetime:
        return datetime.now(timezone.utc)

    def _invoke(self, callback: Callable[[], Any], name: str) -> None:
        try:
            result = callback()
        except Exception as e:
            logger.error(f"Timer callback {name or callback!r} failed: {e}", exc_info=True)
            return
        if asyncio.iscoroutine(result):
            task = asyncio.ensure_future(result)
            self._tasks.add(task)
            task.add_done_callback(self._task_done)

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error(f"Timer task failed: {task.exception()}", exc_info=task.exception())

    def call_later(self, delay: float, callback: Callable[[], Any], name: str = "") -> TimerHandle:
        loop = asyncio.get_running_loop()
        handle = TimerHandle(name)

        def fire():
            if not handle.cancelled:
                handle.cancelled = True
                self._invoke(callback, name)

        inner = loop.call_later(max(delay, 0.0), fire)
        handle._on_cancel = inner.cancel
        return handle

    def call_every(self, interval: float, callback: Callable[[], Any], name: str = "") -> TimerHandle:
        loop = asyncio.get_running_loop()
        handle = TimerHandle(name)
        state = {}

        def fire():
            if handle.cancelled:
                return
            state["inner"] = loop.call_later(interval, fire)
            self._invoke(callback, name)

        state["inner"] = loop.call_later(interval, fire)
        handle._on_cancel = lambda: state["inner"].cancel()
        return handle

    async def drain(self) -> None:
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)


class _VirtualTimer:
    def __init__(self, due: float, callback: Callable[[], Any], handle: TimerHandle,
                 interval: Optional[float] = None):
        self.due = due
        self.callback = callback
        self.handle = handle
        self.interval = interval


class VirtualScheduler(Scheduler):
    """
    Manually advanced clock.

    Timers fire only inside advance(), in due-time order, with now() reporting
    each timer's due time while its callback runs. Coroutine callbacks are
    awaited before the next timer fires.
    """

    def __init__(self, start: Optional[datetime] = None):
        self._start = start or datetime(2024, 1, 1, tzinfo=timezone.utc)
        self._offset = 0.0
        self._queue: List[tuple] = []
        self._seq = itertools.count()

    def now(self) -> datetime:
        return self._start + timedelta(seconds=self._offset)

    @property
    def elapsed(self) -> float:
        return self._offset

    def _push(self, timer: _VirtualTimer) -> None:
        heapq.heappush(self._queue, (timer.due, next(self._seq), timer))

    def call_later(self, delay: float, callback: Callable[[], Any], name: str = "") -> TimerHandle:
        handle = TimerHandle(name)
        self._push(_VirtualTimer(self._offset + max(delay, 0.0), callback, handle))
        return handle

    def call_every(self, interval: float, callback: Callable[[], Any], name: str = "") -> TimerHandle:
        handle = TimerHandle(name)
        self._push(_VirtualTimer(self._offset + interval, callback, handle, interval))
        return handle

    @property
    def pending(self) -> int:
        return sum(1 for _, _, t in self._queue if not t.handle.cancelled)

    async def advance(self, seconds: float) -> None:
        target = self._offset + seconds
        while self._queue and self._queue[0][0] <= target:
            _, _, timer = heapq.heappop(self._queue)
            if timer.handle.cancelled:
                continue
            self._offset = max(self._offset, timer.due)
            if timer.interval is not None:
                timer.due = self._offset + timer.interval
                self._push(timer)
            else:
                timer.handle.cancelled = True
            try:
                result = timer.callback()
                if asyncio.iscoroutine(result):
                    await result
            except Exception as e:
                logger.error(f"Virtual timer {timer.handle.name} failed: {e}", exc_info=True)
        self._offset = target
