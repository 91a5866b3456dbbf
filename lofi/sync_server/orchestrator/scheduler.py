"""
Timers for the backup orchestrator.

- Clock: now() and call_later(), the only source of time for scheduling
- AsyncioClock: backed by the running event loop
- ManualClock: virtual time advanced explicitly (tests)
- CoalescingScheduler: debounce; every arm() restarts the quiet period
- PeriodicTimer: fixed-interval tick, re-armed after each fire

Actions are coroutine functions. Fired actions run as tasks that the
scheduler tracks, so shutdown can wait for them with drain().

Invariants:
    - A CoalescingScheduler fires at most once per quiet period
    - Cancelled handles never fire
    - Exceptions from actions are logged, never propagated into the loop
"""

from __future__ import annotations

import asyncio
import heapq
import itertools
import logging
from collections.abc import Awaitable, Callable
from datetime import datetime, timedelta, timezone
from typing import Protocol

logger = logging.getLogger(__name__)

Action = Callable[[], Awaitable[object]]


class TimerHandle(Protocol):
    def cancel(self) -> None: ...


class Clock(Protocol):
    """Source of time and delayed callbacks."""

    def now(self) -> datetime:
        """Current UTC time."""
        ...

    def call_later(self, delay: float, callback: Callable[[], None]) -> TimerHandle:
        """Run callback after delay seconds; the handle cancels it."""
        ...


class AsyncioClock:
    """Clock backed by the running event loop."""

    def now(self) -> datetime:
        return datetime.now(timezone.utc)

    def call_later(self, delay: float, callback: Callable[[], None]) -> TimerHandle:
        return asyncio.get_running_loop().call_later(delay, callback)


class _ManualHandle:
    def __init__(self) -> None:
        self.cancelled = False

    def cancel(self) -> None:
        self.cancelled = True


class ManualClock:
    """Virtual clock for tests.

    Callbacks run synchronously inside advance(), in due-time order.

    Example:
        >>> clock = ManualClock()
        >>> clock.call_later(30, fired.append)
        >>> clock.advance(29)   # nothing yet
        >>> clock.advance(1)    # fires
    """

    def __init__(self, start: datetime | None = None) -> None:
        self._now = start or datetime(2026, 1, 1, tzinfo=timezone.utc)
        self._elapsed = 0.0
        self._queue: list[tuple[float, int, _ManualHandle, Callable[[], None]]] = []
        self._counter = itertools.count()

    def now(self) -> datetime:
        return self._now + timedelta(seconds=self._elapsed)

    def call_later(self, delay: float, callback: Callable[[], None]) -> TimerHandle:
        handle = _ManualHandle()
        heapq.heappush(self._queue, (self._elapsed + delay, next(self._counter), handle, callback))
        return handle

    @property
    def pending(self) -> int:
        return sum(1 for _, _, handle, _ in self._queue if not handle.cancelled)

    def advance(self, seconds: float) -> None:
        """Move time forward, firing every callback that becomes due."""
        target = self._elapsed + seconds
        while self._queue and self._queue[0][0] <= target:
            due, _, handle, callback = heapq.heappop(self._queue)
            self._elapsed = due
            if not handle.cancelled:
                callback()
        self._elapsed = target


class _TaskTracker:
    """Spawns action tasks and remembers them until they finish."""

    def __init__(self, name: str) -> None:
        self.name = name
        self._tasks: set[asyncio.Task] = set()

    def spawn(self, action: Action) -> None:
        task = asyncio.get_running_loop().create_task(self._run(action))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _run(self, action: Action) -> None:
        try:
            await action()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"{self.name} action failed: {e}", exc_info=True)

    async def drain(self) -> None:
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)


class CoalescingScheduler:
    """Runs an action once after a quiet period.

    Every arm() cancels the pending fire and starts the period again, so
    a burst of arms yields a single run after the last one.
    """

    def __init__(self, clock: Clock, delay: float, action: Action, name: str = "debounce") -> None:
        self.clock = clock
        self.delay = delay
        self.action = action
        self._handle: TimerHandle | None = None
        self._tracker = _TaskTracker(name)

    @property
    def armed(self) -> bool:
        return self._handle is not None

    def arm(self) -> None:
        self.cancel()
        self._handle = self.clock.call_later(self.delay, self._fire)

    def cancel(self) -> None:
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None

    def _fire(self) -> None:
        self._handle = None
        self._tracker.spawn(self.action)

    async def drain(self) -> None:
        """Wait for fired actions to finish."""
        await self._tracker.drain()


class PeriodicTimer:
    """Runs an action every interval seconds until stopped."""

    def __init__(self, clock: Clock, interval: float, action: Action, name: str = "periodic") -> None:
        self.clock = clock
        self.interval = interval
        self.action = action
        self._handle: TimerHandle | None = None
        self._tracker = _TaskTracker(name)

    @property
    def running(self) -> bool:
        return self._handle is not None

    def start(self) -> None:
        """Arm the first tick; calling start() on a running timer is a no-op."""
        if self._handle is None:
            self._handle = self.clock.call_later(self.interval, self._tick)

    def stop(self) -> None:
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None

    def _tick(self) -> None:
        self._handle = self.clock.call_later(self.interval, self._tick)
        self._tracker.spawn(self.action)

    async def drain(self) -> None:
        await self._tracker.drain()
