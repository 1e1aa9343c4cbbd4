"""Injectable time sources for schedulers.

Services never call ``datetime.now()`` or ``asyncio.sleep()`` directly; they
take a :class:`Clock`. Production code uses :class:`SystemClock`. Tests and
simulations use :class:`ManualClock`, where time only moves when
``advance()`` is called, so periodic timers fire deterministically.
"""

import asyncio
import heapq
import itertools
import time
from datetime import datetime, timedelta, timezone
from typing import List, Optional, Protocol, Tuple, runtime_checkable

import structlog

logger = structlog.get_logger(__name__)


@runtime_checkable
class Clock(Protocol):
    """Source of wall-clock time and sleeping."""

    def now(self) -> datetime:
        """Current time as a timezone-aware UTC datetime."""
        ...

    def monotonic(self) -> float:
        """Monotonic seconds, for measuring durations."""
        ...

    async def sleep(self, seconds: float) -> None:
        """Suspend the calling task for ``seconds``."""
        ...


class SystemClock:
    """Real time."""

    def now(self) -> datetime:
        return datetime.now(timezone.utc)

    def monotonic(self) -> float:
        return time.monotonic()

    async def sleep(self, seconds: float) -> None:
        await asyncio.sleep(max(0.0, seconds))


class ManualClock:
    """
    Clock that only advances when told to.

    Pending ``sleep()`` calls are released, in deadline order, once
    ``advance()`` moves the clock past their deadline.

    Example:
        >>> clock = ManualClock()
        >>> timer = PeriodicTimer("backup", 60, callback, clock)
        >>> timer.start()
        >>> clock.advance(60)   # timer fires once
    """

    def __init__(self, start: Optional[datetime] = None):
        self._now = start or datetime(2026, 1, 1, tzinfo=timezone.utc)
        self._elapsed = 0.0
        self._counter = itertools.count()
        self._sleepers: List[Tuple[float, int, "asyncio.Future[None]"]] = []

    def now(self) -> datetime:
        return self._now

    def monotonic(self) -> float:
        return self._elapsed

    async def sleep(self, seconds: float) -> None:
        if seconds <= 0:
            await asyncio.sleep(0)
            return
        future: "asyncio.Future[None]" = asyncio.get_running_loop().create_future()
        heapq.heappush(self._sleepers, (self._elapsed + seconds, next(self._counter), future))
        await future

    @property
    def pending_sleepers(self) -> int:
        """Number of tasks currently sleeping on this clock."""
        return sum(1 for _, _, fut in self._sleepers if not fut.done())

    def advance(self, seconds: float) -> None:
        """Move time forward and wake every sleeper whose deadline has passed."""
        if seconds < 0:
            raise ValueError("Cannot move a clock backwards")
        self._elapsed += seconds
        self._now = self._now + timedelta(seconds=seconds)
        while self._sleepers and self._sleepers[0][0] <= self._elapsed:
            _, _, future = heapq.heappop(self._sleepers)
            if not future.done():
                future.set_result(None)

    def set(self, when: datetime) -> None:
        """Jump to an absolute time (must not be in the past)."""
        delta = (when - self._now).total_seconds()
        self.advance(delta)
