"""
SessionGuard -- Validation Scheduler

Drives periodic validation ticks: one immediately on start, then one per
interval. The recurring loop is a single asyncio task whose handle is
returned by start(); stop() cancels it deterministically and is safe to call
repeatedly, before any start, and from inside the loop itself.

Interval guidance: background-prone (mobile) clients 3 minutes, stable
(desktop) clients 5 minutes.
"""

from __future__ import annotations

import asyncio
import contextlib
from collections.abc import Awaitable, Callable
from typing import TYPE_CHECKING, Any

import structlog

from sessionguard.guard.types import ValidationTick

if TYPE_CHECKING:
    from sessionguard.guard.context import SleepFn

logger = structlog.get_logger("sessionguard.guard.scheduler")

TickFn = Callable[[str | None], Awaitable[ValidationTick | None]]
BelievedSubjectFn = Callable[[], str | None]


class SchedulerAlreadyRunning(RuntimeError):
    """start() was called on a scheduler whose loop is still active."""


class ValidationScheduler:
    def __init__(self, run_tick: TickFn, sleep: SleepFn = asyncio.sleep) -> None:
        self._run_tick = run_tick
        self._sleep = sleep
        self._logger = logger.bind(component="validation_scheduler")
        self._task: asyncio.Task[None] | None = None
        self._running: bool = False
        self._interval_s: float = 0.0
        self._tick_count: int = 0

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def tick_count(self) -> int:
        return self._tick_count

    @property
    def stats(self) -> dict[str, Any]:
        return {
            "running": self._running,
            "interval_s": self._interval_s,
            "tick_count": self._tick_count,
        }

    def start(
        self,
        get_believed_subject: BelievedSubjectFn,
        interval_s: float,
    ) -> asyncio.Task[None]:
        """Start the recurring validation loop and return its task handle."""
        if self._running:
            raise SchedulerAlreadyRunning("validation scheduler is already running")
        if interval_s <= 0:
            raise ValueError("validation interval must be positive")
        self._running = True
        self._interval_s = interval_s
        self._task = asyncio.create_task(
            self._loop(get_believed_subject, interval_s),
            name="session_guard_validation",
        )
        self._logger.info("validation_scheduler_started", interval_s=interval_s)
        return self._task

    async def stop(self) -> None:
        """Cancel the recurring loop."""
        was_running = self._running
        self._running = False
        task, self._task = self._task, None

        # Called from within a tick: the loop sees _running=False and exits
        if task is not None and task is not asyncio.current_task() and not task.done():
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task

        if was_running:
            self._logger.info("validation_scheduler_stopped", tick_count=self._tick_count)

    async def _loop(self, get_believed_subject: BelievedSubjectFn, interval_s: float) -> None:
        while self._running:
            try:
                self._tick_count += 1
                await self._run_tick(get_believed_subject())
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                self._logger.error("validation_loop_error", error=str(exc))

            if not self._running:
                return
            await self._sleep(interval_s)
