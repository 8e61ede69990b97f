import asyncio
import logging
from datetime import datetime, timedelta

from .domain import ScheduledTask, TaskKind, utcnow
from .errors import TimeoutFired
from .ports import TaskScheduler

logger = logging.getLogger(__name__)

MAX_ATTEMPTS = 5
RETRY_STEP = timedelta(seconds=30)


class TaskWorker:
    """
    Polls the durable scheduler and runs due tasks.

    A task is removed with ``claim`` before it runs, so with several workers
    polling the same scheduler each task runs at most once per attempt.
    """

    def __init__(self, scheduler: TaskScheduler, engine, settlement, alerts, poll_seconds: float = 2.0, clock=utcnow):
        self.scheduler = scheduler
        self.engine = engine
        self.settlement = settlement
        self.alerts = alerts
        self.poll_seconds = poll_seconds
        self.clock = clock

    async def run_once(self, now: datetime | None = None) -> int:
        now = now or self.clock()
        handled = 0
        for task in await self.scheduler.due(now):
            if not await self.scheduler.claim(task.id):
                continue
            handled += 1
            try:
                await self._dispatch(task)
            except Exception as e:
                await self._retry(task, now, e)
        return handled

    async def _dispatch(self, task: ScheduledTask):
        if task.kind == TaskKind.TIMEOUT:
            return await self.engine.handle_timeout(
                TimeoutFired(task.booking_id, task.expected_status, task.status_version)
            )
        if task.kind == TaskKind.SETTLE:
            return await self.settlement.settle(task.booking_id)
        if task.kind == TaskKind.PAYOUT:
            return await self.settlement.payout(task.booking_id)
        raise ValueError(f"unknown task kind {task.kind}")

    async def _retry(self, task: ScheduledTask, now: datetime, error: Exception):
        if task.attempts + 1 >= MAX_ATTEMPTS:
            logger.error("task %s (%s) for %s gave up: %s", task.id, task.kind.value, task.booking_id, error)
            await self.alerts.raise_alert(
                "task_exhausted",
                f"{task.kind.value} task failed {MAX_ATTEMPTS} times",
                booking_id=task.booking_id,
                error=error,
            )
            return

        retry = task.retry(now + RETRY_STEP * (task.attempts + 1))
        logger.warning(
            "task %s (%s) for %s failed (attempt %d): %s; retrying at %s",
            task.id, task.kind.value, task.booking_id, retry.attempts, error, retry.due_at.isoformat(),
        )
        await self.scheduler.schedule(retry)

    async def run(self, stop_event: asyncio.Event):
        while not stop_event.is_set():
            try:
                await self.run_once()
            except Exception:
                logger.exception("task poll failed")
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=self.poll_seconds)
            except asyncio.TimeoutError:
                continue
