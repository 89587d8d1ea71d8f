"""
Interval Scheduler for the refresh timer

Provides ScheduledLoop, which fires an async callback at fixed intervals
measured from when the loop was started, accounting for callback
execution time so the phase never drifts.

Unlike asyncio.sleep()-based loops, this scheduler:
- Keeps a fixed phase regardless of how long callbacks take
- Skips missed intervals instead of queueing them up
- Isolates callback errors so one failure never stops the timer

Usage:
    async def refresh():
        ...

    timer = ScheduledLoop(300.0, refresh, name="refresh")
    await timer.start()

    # Later:
    await timer.stop()
"""

import asyncio
import time
from typing import Awaitable, Callable

from .logging_setup import ServiceLoggerAdapter, get_service_logger


class ScheduledLoop:
    """
    Fixed-phase interval scheduler.

    Attributes:
        interval: Seconds between executions
        callback: Async function to call each interval
        name: Name for logging
    """

    def __init__(
        self,
        interval_seconds: float,
        callback: Callable[[], Awaitable[None]],
        name: str = "unnamed",
        logger: ServiceLoggerAdapter | None = None,
    ):
        if interval_seconds <= 0:
            raise ValueError("interval_seconds must be positive")

        self.interval = interval_seconds
        self.callback = callback
        self.name = name
        self._logger = logger or get_service_logger("scheduler")

        self._next_run: float = 0
        self._running = False
        self._task: asyncio.Task | None = None

        self._skipped_count: int = 0
        self._execution_count: int = 0
        self._failure_count: int = 0
        self._last_execution_time: float = 0

    @property
    def is_running(self) -> bool:
        return self._running

    async def start(self) -> None:
        """Start the loop in a background task."""
        if self._running:
            return

        self._running = True
        self._task = asyncio.create_task(self._run(), name=f"scheduler:{self.name}")

    async def stop(self) -> None:
        """Stop the loop and wait for its task to finish."""
        self._running = False
        task, self._task = self._task, None
        if task:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

    async def _run(self) -> None:
        """Main loop that fires the callback on schedule."""
        self._next_run = time.monotonic() + self.interval

        while self._running:
            sleep_duration = self._next_run - time.monotonic()
            if sleep_duration > 0:
                await asyncio.sleep(sleep_duration)

            if not self._running:
                break

            start = time.monotonic()
            try:
                await self.callback()
                self._execution_count += 1
            except asyncio.CancelledError:
                raise
            except Exception as e:
                self._failure_count += 1
                self._logger.error(f"Scheduled callback '{self.name}' error: {e}")
            finally:
                self._last_execution_time = time.monotonic() - start

            # Skip missed intervals to catch up
            now = time.monotonic()
            skipped = 0
            while self._next_run <= now:
                self._next_run += self.interval
                skipped += 1

            # First skip is the run that just happened
            if skipped > 1:
                self._skipped_count += skipped - 1
                self._logger.warning(
                    f"Scheduler '{self.name}' skipped {skipped - 1} intervals "
                    f"(execution took {self._last_execution_time:.3f}s)"
                )

    @property
    def execution_count(self) -> int:
        return self._execution_count

    @property
    def skipped_count(self) -> int:
        return self._skipped_count

    def get_stats(self) -> dict:
        """Get scheduler statistics."""
        return {
            "name": self.name,
            "interval_s": self.interval,
            "execution_count": self._execution_count,
            "failure_count": self._failure_count,
            "skipped_count": self._skipped_count,
            "last_execution_s": round(self._last_execution_time, 3),
        }
