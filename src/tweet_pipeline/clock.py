"""
Clock abstraction for timer-driven retry scheduling.

``MonotonicClock`` reads the running loop's monotonic time. ``ManualClock``
only moves when ``advance()`` is called, which lets retry schedules be
exercised without real sleeps.
"""

from __future__ import annotations

import asyncio
import heapq
import itertools
from typing import Protocol


class Clock(Protocol):
    def now(self) -> float:
        """Current time in seconds (monotonic)."""
        ...

    async def sleep_until(self, deadline: float) -> None:
        """Suspend until ``now() >= deadline``."""
        ...


class MonotonicClock:
    def now(self) -> float:
        return asyncio.get_running_loop().time()

    async def sleep_until(self, deadline: float) -> None:
        delay = deadline - self.now()
        if delay > 0:
            await asyncio.sleep(delay)


class ManualClock:
    """Deterministic clock for tests.

    Example:
        clock = ManualClock()
        waiter = asyncio.create_task(clock.sleep_until(5.0))
        clock.advance(5.0)  # waiter completes
    """

    def __init__(self, start: float = 0.0) -> None:
        self._now = start
        self._waiters: list[tuple[float, int, asyncio.Future]] = []
        self._seq = itertools.count()

    def now(self) -> float:
        return self._now

    async def sleep_until(self, deadline: float) -> None:
        if deadline <= self._now:
            return
        fut = asyncio.get_running_loop().create_future()
        heapq.heappush(self._waiters, (deadline, next(self._seq), fut))
        await fut

    def advance(self, seconds: float) -> None:
        if seconds < 0:
            raise ValueError("cannot move a clock backwards")
        self._now += seconds
        while self._waiters and self._waiters[0][0] <= self._now:
            _, _, fut = heapq.heappop(self._waiters)
            if not fut.done():
                fut.set_result(None)

    @property
    def pending_sleepers(self) -> int:
        return sum(1 for _, _, f in self._waiters if not f.done())
