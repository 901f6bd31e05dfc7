"""Clock abstraction for timers, backoff sleeps and timestamps."""

from __future__ import annotations

import asyncio
import time
from collections.abc import Awaitable, Callable
from typing import Protocol

from armada.logging import get_logger

logger = get_logger("clock")


class Clock(Protocol):
    """Source of time and sleeping used by every ARMADA component."""

    def time(self) -> float:
        """Wall-clock seconds since the epoch."""
        ...

    def monotonic(self) -> float:
        """Monotonic seconds for measuring elapsed time."""
        ...

    async def sleep(self, seconds: float) -> None:
        """Suspend the calling coroutine for ``seconds``."""
        ...


class SystemClock:
    """Clock backed by the real time and the running event loop."""

    def time(self) -> float:
        return time.time()

    def monotonic(self) -> float:
        return time.monotonic()

    async def sleep(self, seconds: float) -> None:
        await asyncio.sleep(max(0.0, seconds))


class PeriodicTask:
    """Run a coroutine function every ``interval`` seconds on a clock.

    The first run happens one interval after start(). Errors raised by the
    callback are logged and the loop keeps going.
    """

    def __init__(
        self,
        name: str,
        interval: float,
        callback: Callable[[], Awaitable[None]],
        clock: Clock | None = None,
    ) -> None:
        self.name = name
        self.interval = interval
        self._callback = callback
        self._clock: Clock = clock or SystemClock()
        self._task: asyncio.Task[None] | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self._run(), name=f"armada-{self.name}")
        logger.debug(f"Started periodic task {self.name} every {self.interval}s")

    async def stop(self) -> None:
        if self._task is None:
            return
        task, self._task = self._task, None
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        logger.debug(f"Stopped periodic task {self.name}")

    async def _run(self) -> None:
        while True:
            await self._clock.sleep(self.interval)
            try:
                await self._callback()
            except Exception as e:  # noqa: BLE001 — a failing tick must not end the loop
                logger.warning(f"Periodic task {self.name} failed: {e}")
