"""
Fixed-rate periodic task for per-run polling loops.

Each active test run owns up to three of these: the readings collector poll,
the safety monitor reading check, and the safety monitor health check. The
loop runs on the asyncio event loop, so a tick's network I/O never blocks
the ticks of other runs.

Scheduling rules:
- The first tick fires one interval after ``start()``.
- Ticks never overlap: if the previous tick is still in flight when the next
  deadline arrives, that tick is skipped rather than queued.
- ``cancel()`` is synchronous. It stops future ticks immediately; a tick that
  is already in flight is allowed to finish.
- A tick that raises is logged and never kills the loop.
- ``scheduled_at`` holds the loop-clock deadline of the latest tick, so
  callers can time ticks without query latency or wakeup jitter.

CHANGELOG:
- 2026-10-16: Expose each tick's scheduled deadline (STORY-013)
- 2026-10-03: Initial creation (STORY-003)

TODO:
- None
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable

logger = logging.getLogger(__name__)


class PeriodicTask:
    """Cancellable fixed-rate loop that coalesces overlapping ticks.

    Args:
        name: Label used in log lines and the asyncio task name.
        interval_s: Seconds between tick deadlines.
        callback: Zero-argument coroutine function run on every tick.
    """

    def __init__(
        self,
        name: str,
        interval_s: float,
        callback: Callable[[], Awaitable[None]],
    ) -> None:
        if interval_s <= 0:
            raise ValueError("interval_s must be > 0")
        self.name = name
        self._interval_s = interval_s
        self._callback = callback
        self._task: asyncio.Task[None] | None = None
        self._inflight: asyncio.Task[None] | None = None
        self.tick_count: int = 0
        self.skipped_count: int = 0
        self.scheduled_at: float | None = None

    @property
    def interval_s(self) -> float:
        return self._interval_s

    @property
    def running(self) -> bool:
        """True while the scheduling loop is alive."""
        return self._task is not None and not self._task.done()

    @property
    def in_flight(self) -> bool:
        """True while a tick's callback is executing."""
        return self._inflight is not None and not self._inflight.done()

    def start(self) -> None:
        """Start the loop on the running event loop.

        Raises:
            RuntimeError: If the task was already started.
        """
        if self._task is not None:
            raise RuntimeError(f"Periodic task '{self.name}' already started")
        self._task = asyncio.get_running_loop().create_task(
            self._run(), name=f"periodic:{self.name}"
        )

    def cancel(self) -> None:
        """Stop scheduling further ticks. Safe to call more than once."""
        if self._task is not None and not self._task.done():
            self._task.cancel()

    async def wait_idle(self) -> None:
        """Wait for an in-flight tick, if any, to finish."""
        inflight = self._inflight
        if inflight is not None and not inflight.done():
            await asyncio.wait({inflight})

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _run(self) -> None:
        loop = asyncio.get_running_loop()
        next_at = loop.time() + self._interval_s
        while True:
            await asyncio.sleep(max(0.0, next_at - loop.time()))
            now = loop.time()
            deadline = next_at
            next_at += self._interval_s
            if next_at <= now:
                # Fell more than one interval behind: realign instead of bursting.
                deadline = now
                next_at = now + self._interval_s

            if self.in_flight:
                self.skipped_count += 1
                logger.debug(
                    "Skipping tick for '%s': previous tick still in flight",
                    self.name,
                )
                continue

            self.tick_count += 1
            self.scheduled_at = deadline
            self._inflight = loop.create_task(
                self._tick(), name=f"tick:{self.name}"
            )

    async def _tick(self) -> None:
        try:
            await self._callback()
        except Exception:
            logger.error("Tick error in '%s'", self.name, exc_info=True)
