"""Cancellable periodic timer."""

import asyncio
from collections.abc import Callable, Coroutine
from datetime import datetime, timedelta
from typing import Any

import structlog

from labguard.common.clock import Clock, SystemClock

logger = structlog.get_logger(__name__)


class PeriodicTimer:
    """Invoke an async callback every ``interval_seconds``.

    The first call happens after ``first_delay`` seconds (one interval when
    not given). Exceptions raised by the callback are logged and the timer
    keeps going. ``cancel()`` stops future fires; whether the callback
    survives cancellation is up to the callback (the schedulers run their
    work in a separate shielded task).

    Example:
        >>> timer = PeriodicTimer("backup", 86400, scheduler.tick)
        >>> timer.start()
        >>> ...
        >>> await timer.cancel()
    """

    def __init__(
        self,
        name: str,
        interval_seconds: float,
        callback: Callable[[], Coroutine[Any, Any, Any]],
        clock: Clock | None = None,
        first_delay: float | None = None,
    ):
        if interval_seconds <= 0:
            raise ValueError("interval_seconds must be positive")
        if first_delay is not None and first_delay < 0:
            raise ValueError("first_delay must not be negative")

        self.name = name
        self.interval_seconds = interval_seconds
        self.first_delay = interval_seconds if first_delay is None else first_delay
        self._callback = callback
        self._clock = clock or SystemClock()
        self._task: asyncio.Task[None] | None = None
        self._fire_count = 0
        self._next_fire_at: datetime | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def fire_count(self) -> int:
        return self._fire_count

    @property
    def has_fired(self) -> bool:
        return self._fire_count > 0

    @property
    def next_fire_at(self) -> datetime | None:
        """When the next fire is due, or None if the timer is not running."""
        return self._next_fire_at if self.running else None

    def start(self) -> None:
        """Start the timer. Must be called from a running event loop."""
        if self.running:
            logger.warning("timer_already_running", timer=self.name)
            return

        self._task = asyncio.get_running_loop().create_task(
            self._run(), name=f"timer:{self.name}"
        )
        logger.info(
            "timer_started",
            timer=self.name,
            interval_seconds=self.interval_seconds,
            first_delay=self.first_delay,
        )

    async def cancel(self) -> None:
        """Stop the timer. Safe to call more than once."""
        task = self._task
        if task is None:
            return

        self._task = None
        self._next_fire_at = None
        if not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        logger.info("timer_cancelled", timer=self.name, fire_count=self._fire_count)

    async def _run(self) -> None:
        delay = self.first_delay
        while True:
            self._next_fire_at = self._clock.now() + timedelta(seconds=delay)
            await self._clock.sleep(delay)

            self._fire_count += 1
            logger.debug("timer_fired", timer=self.name, fire_count=self._fire_count)
            try:
                await self._callback()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(
                    "timer_callback_failed",
                    timer=self.name,
                    error=str(e),
                    exc_info=True,
                )

            delay = self.interval_seconds
