# SPDX-License-Identifier: MPL-2.0
"""
Timer scheduling.

All periodic work (schedule ticks, maintenance, reconnection backoff) goes
through a Scheduler so that it can run on the asyncio event loop in the
daemon, or on a manually advanced virtual clock in tests.

Callbacks may be plain functions or return an awaitable; awaitables are run
to completion by the scheduler.
"""

import asyncio
import heapq
import inspect
import itertools
import logging
from abc import ABC, abstractmethod
from typing import Any, Callable, List, Optional, Protocol, Set, Tuple

logger = logging.getLogger(__name__)

Callback = Callable[[], Any]


class Handle(Protocol):
    """Cancellable scheduled call."""

    def cancel(self) -> None:
        ...


class RepeatingHandle:
    """Handle for a callback re-armed every ``interval`` seconds."""

    def __init__(self, scheduler: "Scheduler", interval: float, callback: Callback) -> None:
        self._scheduler = scheduler
        self.interval = interval
        self._callback = callback
        self._handle: Optional[Handle] = None
        self._cancelled = False

    def _arm(self, delay: float) -> None:
        self._handle = self._scheduler.call_later(delay, self._fire)

    def _fire(self) -> Any:
        if self._cancelled:
            return None
        # Re-arm first so a failing callback does not stop the timer
        self._arm(self.interval)
        return self._callback()

    def cancel(self) -> None:
        self._cancelled = True
        if self._handle is not None:
            self._handle.cancel()

    def cancelled(self) -> bool:
        return self._cancelled


class Scheduler(ABC):
    """Run callbacks after a delay or periodically."""

    @abstractmethod
    def call_later(self, delay: float, callback: Callback) -> Handle:
        """Run ``callback`` once after ``delay`` seconds."""

    def call_every(
        self,
        interval: float,
        callback: Callback,
        initial_delay: Optional[float] = None,
    ) -> RepeatingHandle:
        """
        Run ``callback`` every ``interval`` seconds.

        Args:
            interval: Seconds between runs
            callback: Function to call
            initial_delay: Delay before the first run (default: ``interval``)

        Returns:
            Handle that stops the repetition when cancelled
        """
        if interval <= 0:
            raise ValueError(f"Interval must be positive, got {interval}")

        handle = RepeatingHandle(self, interval, callback)
        handle._arm(interval if initial_delay is None else initial_delay)
        return handle


class AsyncioScheduler(Scheduler):
    """Scheduler running on the asyncio event loop."""

    def __init__(self, loop: Optional[asyncio.AbstractEventLoop] = None) -> None:
        self._loop = loop
        self._tasks: Set["asyncio.Task[Any]"] = set()

    def call_later(self, delay: float, callback: Callback) -> asyncio.TimerHandle:
        loop = self._loop or asyncio.get_running_loop()
        return loop.call_later(delay, self._run, callback)

    def _run(self, callback: Callback) -> None:
        try:
            result = callback()
        except Exception as e:
            logger.error(f"Error in scheduled callback: {e}", exc_info=True)
            return

        if inspect.isawaitable(result):
            task = asyncio.ensure_future(result)
            self._tasks.add(task)
            task.add_done_callback(self._on_task_done)

    def _on_task_done(self, task: "asyncio.Task[Any]") -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error(f"Error in scheduled task: {error}", exc_info=error)

    async def drain(self) -> None:
        """Wait for callbacks that are still running."""
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)


class ManualTimer:
    """Timer entry of a ManualScheduler."""

    def __init__(self, due: float, callback: Callback) -> None:
        self.due = due
        self.callback = callback
        self._cancelled = False

    def cancel(self) -> None:
        self._cancelled = True

    def cancelled(self) -> bool:
        return self._cancelled

    def __repr__(self) -> str:
        return f"ManualTimer(due={self.due}, cancelled={self._cancelled})"


class ManualScheduler(Scheduler):
    """
    Scheduler driven by a virtual clock.

    Time only moves when ``advance()`` is awaited. Due callbacks run in due
    order; awaitables they return are awaited before the next one runs.

    Example:
        >>> scheduler = ManualScheduler()
        >>> scheduler.call_later(5, tick)
        >>> await scheduler.advance(5)  # tick() has now run
    """

    def __init__(self) -> None:
        self.now = 0.0
        self._heap: List[Tuple[float, int, ManualTimer]] = []
        self._counter = itertools.count()

    def call_later(self, delay: float, callback: Callback) -> ManualTimer:
        timer = ManualTimer(self.now + max(delay, 0.0), callback)
        heapq.heappush(self._heap, (timer.due, next(self._counter), timer))
        return timer

    def pending(self) -> List[ManualTimer]:
        """Timers that have neither run nor been cancelled, in due order."""
        return [entry[2] for entry in sorted(self._heap) if not entry[2].cancelled()]

    def next_due(self) -> Optional[float]:
        """Virtual time of the next pending timer."""
        timers = self.pending()
        return timers[0].due if timers else None

    async def advance(self, seconds: float) -> None:
        """Move the clock forward, running every timer that becomes due."""
        target = self.now + seconds

        while self._heap and self._heap[0][0] <= target:
            due, _, timer = heapq.heappop(self._heap)
            if timer.cancelled():
                continue
            self.now = due
            result = timer.callback()
            if inspect.isawaitable(result):
                await result

        self.now = target
