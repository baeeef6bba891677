"""Debounced refresh sink.

Poll ticks and broadcast hints both end up here. request() coalesces any
number of hints arriving within the debounce window into one fetch; flush()
fetches immediately. Fetches are serialized by a lock, so a hint arriving
while a fetch is running schedules exactly one more fetch afterwards and is
never lost. Every successful fetch goes to the single deliver callback.
"""

from __future__ import annotations

import asyncio
import inspect
from collections.abc import Awaitable, Callable
from typing import Any

import structlog

logger = structlog.get_logger(__name__)


class RefreshSink:
    """Single consumer of "refresh requested" signals.

    Args:
        fetch: Async callable returning fresh authoritative state.
        deliver: Callable (sync or async) receiving each fetch result.
        debounce: Seconds to wait for more hints before fetching.
        sleep: Injectable sleep for tests.
    """

    def __init__(
        self,
        fetch: Callable[[], Awaitable[Any]],
        deliver: Callable[[Any], Any],
        debounce: float = 0.25,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._fetch = fetch
        self._deliver = deliver
        self._debounce = debounce
        self._sleep = sleep
        self._lock = asyncio.Lock()
        self._scheduled: asyncio.Task | None = None
        self._tasks: set[asyncio.Task] = set()
        self._reasons: set[str] = set()
        self._in_flight = False
        self.completed = 0
        self.failed = 0

    @property
    def in_flight(self) -> bool:
        return self._in_flight

    @property
    def scheduled(self) -> bool:
        """A debounced fetch is waiting out its window and has not started."""
        return self._scheduled is not None

    def request(self, reason: str) -> None:
        """Ask for a refresh soon; repeated calls inside the window coalesce."""
        self._reasons.add(reason)
        if self._scheduled is None:
            task = asyncio.create_task(self._debounced())
            self._scheduled = task
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)

    async def _debounced(self) -> None:
        try:
            await self._sleep(self._debounce)
        finally:
            self._scheduled = None
        await self.flush()

    async def flush(self) -> bool:
        """Fetch now and deliver. Returns False if fetch or delivery failed."""
        async with self._lock:
            reasons = sorted(self._reasons) or ["direct"]
            self._reasons = set()
            self._in_flight = True
            try:
                result = await self._fetch()
            except Exception:
                self.failed += 1
                logger.warning("refresh.fetch_failed", reasons=reasons, exc_info=True)
                return False
            finally:
                self._in_flight = False

            try:
                outcome = self._deliver(result)
                if inspect.isawaitable(outcome):
                    await outcome
            except Exception:
                self.failed += 1
                logger.error("refresh.deliver_failed", reasons=reasons, exc_info=True)
                return False

            self.completed += 1
            logger.debug("refresh.completed", reasons=reasons)
            return True

    async def stop(self) -> None:
        """Cancel scheduled and running debounced fetches; nothing is delivered after."""
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        for task in tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._scheduled = None
        self._reasons = set()
