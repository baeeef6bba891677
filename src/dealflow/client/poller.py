"""Fixed-interval poll scheduler.

Polling is the correctness backstop for the best-effort broadcast channel:
it runs regardless of whether the channel is live. The enabled predicate is
re-evaluated on every tick, so a view can pause polling while a local
mutation is in flight. A failed tick leaves local state untouched and is
not retried early; the next tick is the retry.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from typing import Any

import structlog

logger = structlog.get_logger(__name__)


class PollScheduler:
    """Runs ``tick`` every ``interval`` seconds while ``enabled()`` holds.

    Args:
        name: Label used in logs (e.g. "board", "notifications").
        interval: Seconds between ticks.
        tick: Async callable performing one fetch-and-apply.
        enabled: Predicate checked before every tick.
        sleep: Injectable sleep for tests.

    Counters: ``ticks`` counts ticks that ran, ``skipped`` ticks the
    predicate vetoed, ``failures`` ticks that raised or returned False.
    """

    def __init__(
        self,
        name: str,
        interval: float,
        tick: Callable[[], Awaitable[Any]],
        enabled: Callable[[], bool] = lambda: True,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.name = name
        self.interval = interval
        self._tick = tick
        self._enabled = enabled
        self._sleep = sleep
        self._task: asyncio.Task | None = None
        self.ticks = 0
        self.skipped = 0
        self.failures = 0

    async def tick_once(self) -> bool:
        """Run one tick. Returns False when skipped or failed."""
        if not self._enabled():
            self.skipped += 1
            return False
        try:
            outcome = await self._tick()
        except Exception:
            self.failures += 1
            logger.warning("poll.tick_failed", poller=self.name, exc_info=True)
            return False
        self.ticks += 1
        if outcome is False:
            self.failures += 1
            logger.debug("poll.tick_unsuccessful", poller=self.name)
            return False
        return True

    async def run(self) -> None:
        """Tick immediately, then every interval, until cancelled."""
        logger.info("poll.started", poller=self.name, interval=self.interval)
        while True:
            try:
                await self.tick_once()
                await self._sleep(self.interval)
            except asyncio.CancelledError:
                logger.info("poll.stopped", poller=self.name)
                break

    def start(self) -> None:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self.run())

    async def stop(self) -> None:
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
