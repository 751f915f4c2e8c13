"""
Periodic task runner for the scan cycle and the lifecycle monitor.

Each task runs its coroutine, then sleeps for the interval. Runs of the same
task never overlap: the loop, ``run_now`` and ``run_exclusive`` share one lock.
"""

from __future__ import annotations

import asyncio
import enum
import traceback
from typing import Any, Awaitable, Callable, Optional

from src.core.logger import get_logger

logger = get_logger("scheduler")


class TaskState(str, enum.Enum):
    STOPPED = "STOPPED"
    RUNNING = "RUNNING"


class PeriodicTask:
    """Interval loop around one coroutine function."""

    def __init__(
        self,
        name: str,
        interval_seconds: float,
        coro_fn: Callable[[], Awaitable[Any]],
        error_backoff_seconds: float = 5.0,
    ):
        if interval_seconds <= 0:
            raise ValueError(f"interval_seconds must be positive, got {interval_seconds}")
        self.name = name
        self.interval_seconds = float(interval_seconds)
        self.error_backoff_seconds = float(error_backoff_seconds)
        self._coro_fn = coro_fn
        self._lock = asyncio.Lock()
        self._task: Optional[asyncio.Task] = None
        self._running = False
        self.run_count = 0
        self.error_count = 0

    @property
    def state(self) -> TaskState:
        return TaskState.RUNNING if self._running else TaskState.STOPPED

    async def start(self) -> None:
        if self._running:
            return
        self._running = True
        self._task = asyncio.create_task(self._loop(), name=self.name)
        logger.info("Periodic task started", task=self.name, interval=self.interval_seconds)

    async def stop(self, timeout: float = 15.0) -> None:
        if not self._running and self._task is None:
            return
        self._running = False
        task, self._task = self._task, None
        if task is not None:
            task.cancel()
            try:
                await asyncio.wait_for(asyncio.gather(task, return_exceptions=True), timeout=timeout)
            except asyncio.TimeoutError:
                logger.warning("Periodic task did not stop in time", task=self.name, timeout=timeout)
        logger.info("Periodic task stopped", task=self.name, runs=self.run_count)

    async def run_now(self) -> Any:
        """Run once immediately, waiting for an in-flight run to finish first."""
        async with self._lock:
            self.run_count += 1
            return await self._coro_fn()

    async def run_exclusive(self, coro_fn: Callable[..., Awaitable[Any]], *args, **kwargs) -> Any:
        """Run another coroutine under this task's lock without counting it as a run."""
        async with self._lock:
            return await coro_fn(*args, **kwargs)

    async def _loop(self) -> None:
        while self._running:
            try:
                await self.run_now()
                await asyncio.sleep(self.interval_seconds)
            except asyncio.CancelledError:
                break
            except Exception as e:
                self.error_count += 1
                logger.error(
                    "Periodic task error",
                    task=self.name,
                    error=repr(e),
                    error_type=type(e).__name__,
                    traceback=traceback.format_exc(),
                )
                await asyncio.sleep(self.error_backoff_seconds)
