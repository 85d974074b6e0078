# src/chatcore/scheduling.py
"""
Periodic task scheduling for ChatCore components.

A small async-native scheduler used for the background loops of the core:
state auto-save, chat-history retention cleanup, provider health checks,
pending-update replay and analytics aggregation. Each registered task runs
at its own interval.

Features:
    - Fixed interval scheduling
    - Sync or async callbacks
    - Error isolation: a failed run is logged and counted, and the task is
      scheduled again as usual so one failed cycle never halts later ones
    - Task statistics

Example:
    scheduler = PeriodicScheduler(tick_interval=1.0)

    scheduler.register(PeriodicTask(
        name="state_auto_save",
        callback=store.save,
        interval=10.0,
        description="Persist dirty state documents",
    ))

    await scheduler.start()
    print(scheduler.get_status())
    await scheduler.stop()
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any

from .models import utc_now

logger = logging.getLogger(__name__)


# =============================================================================
# PeriodicTask
# =============================================================================


@dataclass
class PeriodicTask:
    """
    A task to run periodically.

    Attributes:
        name: Unique task identifier
        callback: Function or coroutine function to call
        interval: Seconds between runs
        enabled: Whether task is active
        last_run: When task last ran
        next_run: When task should run next
        run_count: Total runs, failed ones included
        error_count: Total errors
        consecutive_errors: Errors since last success
        last_error: Most recent error message
        description: Human-readable description
    """

    name: str
    callback: Callable[[], Any]
    interval: float

    enabled: bool = True
    last_run: datetime | None = None
    next_run: datetime | None = None
    run_count: int = 0

    error_count: int = 0
    consecutive_errors: int = 0
    last_error: str | None = None

    description: str = ""

    def should_run(self, now: datetime) -> bool:
        if not self.enabled:
            return False
        if self.next_run is None:
            return True
        return now >= self.next_run

    def schedule_next(self, now: datetime) -> None:
        self.last_run = now
        self.next_run = now + timedelta(seconds=self.interval)
        self.run_count += 1

    def record_success(self) -> None:
        self.consecutive_errors = 0
        self.last_error = None

    def record_error(self, error: str) -> None:
        self.error_count += 1
        self.consecutive_errors += 1
        self.last_error = error

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "interval_seconds": self.interval,
            "enabled": self.enabled,
            "last_run": self.last_run.isoformat() if self.last_run else None,
            "next_run": self.next_run.isoformat() if self.next_run else None,
            "run_count": self.run_count,
            "error_count": self.error_count,
            "consecutive_errors": self.consecutive_errors,
            "last_error": self.last_error,
            "description": self.description,
        }


# =============================================================================
# PeriodicScheduler
# =============================================================================


class PeriodicScheduler:
    """
    Runs registered tasks at their intervals from one background loop.

    The loop wakes every ``tick_interval`` seconds and runs the tasks that
    are due, one after another. Tasks interleave with foreground calls only
    at their own await points.
    """

    def __init__(self, tick_interval: float = 1.0) -> None:
        self.tick_interval = tick_interval
        self._tasks: dict[str, PeriodicTask] = {}
        self._running = False
        self._loop_task: asyncio.Task | None = None

    def register(self, task: PeriodicTask) -> None:
        self._tasks[task.name] = task
        logger.info(f"Registered periodic task: {task.name} (every {task.interval}s)")

    def unregister(self, name: str) -> None:
        if self._tasks.pop(name, None) is not None:
            logger.info(f"Unregistered periodic task: {name}")

    def get_task(self, name: str) -> PeriodicTask | None:
        return self._tasks.get(name)

    def list_tasks(self) -> list[str]:
        return list(self._tasks.keys())

    @property
    def is_running(self) -> bool:
        return self._running

    async def start(self) -> None:
        """
        Start the scheduler loop.

        Idempotent; calling it again while running is a no-op.
        """
        if self._running:
            return
        self._running = True
        self._loop_task = asyncio.create_task(self._loop())
        logger.info(f"Scheduler started (tick: {self.tick_interval}s)")

    async def stop(self) -> None:
        self._running = False
        if self._loop_task:
            self._loop_task.cancel()
            try:
                await self._loop_task
            except asyncio.CancelledError:
                pass
            self._loop_task = None
        logger.info("Scheduler stopped")

    async def tick(self) -> None:
        """
        Run every task that is due now.

        Useful for tests or to run due tasks without waiting for the loop.
        """
        now = utc_now()
        for task in list(self._tasks.values()):
            if task.should_run(now):
                await self._run_task(task, now)

    async def _loop(self) -> None:
        while self._running:
            try:
                await self.tick()
                await asyncio.sleep(self.tick_interval)
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error(f"Scheduler loop error: {e}", exc_info=True)
                await asyncio.sleep(self.tick_interval)

    async def _run_task(self, task: PeriodicTask, now: datetime) -> Any:
        try:
            logger.debug(f"Running periodic task: {task.name}")
            result = task.callback()
            if inspect.isawaitable(result):
                result = await result
            task.schedule_next(now)
            task.record_success()
            return result
        except Exception as e:
            task.record_error(str(e))
            task.schedule_next(now)
            logger.error(f"Periodic task {task.name} failed: {e}", exc_info=True)
            return None

    async def run_task_now(self, name: str) -> Any:
        """
        Run a specific task immediately, bypassing its schedule.

        Raises:
            KeyError: If no task with that name is registered.
        """
        task = self._tasks.get(name)
        if task is None:
            raise KeyError(f"Task not found: {name}")
        return await self._run_task(task, utc_now())

    def get_status(self) -> dict[str, Any]:
        return {
            "running": self._running,
            "tick_interval_seconds": self.tick_interval,
            "task_count": len(self._tasks),
            "tasks": {name: task.to_dict() for name, task in self._tasks.items()},
        }


__all__ = ["PeriodicScheduler", "PeriodicTask"]
