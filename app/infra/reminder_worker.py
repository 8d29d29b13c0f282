# app/infra/reminder_worker.py
"""
In-process async reminder worker.

Runs ``send_due_reminders`` on a fixed interval.  Claims are
at-most-once in the notification store, so several workers (or a
restart mid-sweep) never send the same reminder twice.
"""
from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Callable

from app.core.dispatch.ports import AsyncJobStore, AsyncNotificationQueue, AsyncProfileDirectory
from app.core.dispatch.reminders import send_due_reminders
from app.infra.logging_config import get_logger
from app.infra.metrics import inc_counter

logger = get_logger(__name__)


class ReminderWorker:
    """
    Usage:
        worker = ReminderWorker(jobs, profiles, queue, interval=3600)
        await worker.start()
        ...
        await worker.stop()
    """

    def __init__(
        self,
        jobs: AsyncJobStore,
        profiles: AsyncProfileDirectory,
        queue: AsyncNotificationQueue,
        *,
        interval: float = 3600.0,
        lead_time: timedelta = timedelta(hours=2),
        clock: Callable[[], datetime] | None = None,
    ):
        self._jobs = jobs
        self._profiles = profiles
        self._queue = queue
        self._interval = interval
        self._lead_time = lead_time
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._task: asyncio.Task | None = None
        self._running = False
        self.sweeps = 0

    @property
    def running(self) -> bool:
        return self._running and self._task is not None and not self._task.done()

    async def start(self) -> None:
        """Start the sweep loop as an asyncio task."""
        self._running = True
        self._task = asyncio.create_task(self._loop(), name="reminder_worker")
        self._task.add_done_callback(self._on_task_done)
        logger.info(
            f"Reminder worker started: interval={self._interval}s, "
            f"lead_time={int(self._lead_time.total_seconds() // 60)}min",
        )

    async def stop(self) -> None:
        """Stop sweeping; an in-flight sweep is cancelled."""
        self._running = False
        if self._task and not self._task.done():
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        logger.info("Reminder worker stopped")

    async def run_once(self) -> int:
        sent = await send_due_reminders(
            self._jobs, self._profiles, self._queue, self._clock(), self._lead_time
        )
        self.sweeps += 1
        return sent

    async def _loop(self) -> None:
        while self._running:
            try:
                await self.run_once()
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.error(f"Reminder sweep failed: {exc}", exc_info=True)
                inc_counter("reminder_sweep_errors")
            await asyncio.sleep(self._interval)

    @staticmethod
    def _on_task_done(task: asyncio.Task) -> None:
        """Log unexpected worker death."""
        if task.cancelled():
            return
        exc = task.exception()
        if exc:
            logger.error(
                f"Reminder worker task died unexpectedly: {exc}",
                exc_info=(type(exc), exc, exc.__traceback__),
            )
