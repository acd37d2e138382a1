from __future__ import annotations

import asyncio
import heapq
import itertools
import logging
import time
from abc import ABC, abstractmethod
from collections.abc import Callable

logger = logging.getLogger(__name__)


class TimerHandle:
    def __init__(self, due: float, callback: Callable[[], None]) -> None:
        self.due = due
        self.callback = callback
        self.cancelled = False
        self._loop_handle: asyncio.TimerHandle | None = None

    def cancel(self) -> None:
        self.cancelled = True
        if self._loop_handle is not None:
            self._loop_handle.cancel()


class Scheduler(ABC):
    """One-shot timer source; every wait in the engine goes through here."""

    @abstractmethod
    def now(self) -> float:
        raise NotImplementedError

    @abstractmethod
    def call_later(self, delay: float, callback: Callable[[], None]) -> TimerHandle:
        raise NotImplementedError


class ManualScheduler(Scheduler):
    """Simulated clock. Callbacks run only from ``advance``."""

    def __init__(self, start: float = 0.0) -> None:
        self._now = float(start)
        self._seq = itertools.count()
        self._heap: list[tuple[float, int, TimerHandle]] = []

    def now(self) -> float:
        return self._now

    def call_later(self, delay: float, callback: Callable[[], None]) -> TimerHandle:
        handle = TimerHandle(self._now + max(0.0, delay), callback)
        heapq.heappush(self._heap, (handle.due, next(self._seq), handle))
        return handle

    def advance(self, seconds: float) -> None:
        self.advance_to(self._now + seconds)

    def advance_to(self, target: float) -> None:
        while self._heap and self._heap[0][0] <= target:
            due, _, handle = heapq.heappop(self._heap)
            if handle.cancelled:
                continue
            self._now = max(self._now, due)
            handle.callback()
        self._now = max(self._now, target)

    def pending(self) -> int:
        return sum(1 for _, _, h in self._heap if not h.cancelled)


class LoopScheduler(Scheduler):
    """Timers on an asyncio loop; wall-clock ``now`` so expiries survive restarts."""

    def __init__(self, loop: asyncio.AbstractEventLoop) -> None:
        self.loop = loop

    def now(self) -> float:
        return time.time()

    def call_later(self, delay: float, callback: Callable[[], None]) -> TimerHandle:
        handle = TimerHandle(self.now() + max(0.0, delay), callback)

        def _fire() -> None:
            if handle.cancelled:
                return
            try:
                callback()
            except Exception:
                logger.exception("Scheduled callback failed")

        handle._loop_handle = self.loop.call_later(max(0.0, delay), _fire)
        return handle
