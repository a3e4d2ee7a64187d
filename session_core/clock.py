"""
Time sources for the session timers.
LoopClock schedules on the running asyncio loop; ManualClock is virtual time that only
moves when advance() is called (tests, simulations of long idle periods).
"""
import asyncio
import heapq
import itertools
import time
from dataclasses import dataclass, field
from typing import Callable, Protocol


class Timer(Protocol):
    def cancel(self) -> None: ...


class Clock(Protocol):
    def now(self) -> float:
        """Current wall time, epoch seconds."""
        ...

    def call_later(self, delay: float, callback: Callable[[], None]) -> Timer: ...


class LoopClock:
    """Wall clock + asyncio loop timers. Must be used from inside the running loop."""

    def now(self) -> float:
        return time.time()

    def call_later(self, delay: float, callback: Callable[[], None]) -> asyncio.TimerHandle:
        loop = asyncio.get_running_loop()
        return loop.call_later(max(0.0, delay), callback)


@dataclass(order=True)
class _ManualTimer:
    when: float
    seq: int
    callback: Callable[[], None] = field(compare=False)
    cancelled: bool = field(default=False, compare=False)

    def cancel(self) -> None:
        self.cancelled = True


class ManualClock:
    def __init__(self, start: float = 1_700_000_000.0):
        self._now = start
        self._seq = itertools.count()
        self._queue: list[_ManualTimer] = []

    def now(self) -> float:
        return self._now

    def call_later(self, delay: float, callback: Callable[[], None]) -> _ManualTimer:
        timer = _ManualTimer(self._now + max(0.0, delay), next(self._seq), callback)
        heapq.heappush(self._queue, timer)
        return timer

    def advance(self, seconds: float) -> None:
        """
        Move time forward, running due callbacks in deadline order.
        Timers scheduled by a callback run in the same call if they fall due before the target.
        """
        target = self._now + seconds
        while True:
            while self._queue and self._queue[0].cancelled:
                heapq.heappop(self._queue)
            if not self._queue or self._queue[0].when > target:
                break
            timer = heapq.heappop(self._queue)
            self._now = max(self._now, timer.when)
            timer.cancelled = True  # fired; a late cancel() is a no-op
            timer.callback()
        self._now = target

    def pending(self) -> int:
        """Number of live (not fired, not cancelled) timers."""
        return sum(1 for t in self._queue if not t.cancelled)
