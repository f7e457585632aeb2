"""
Wall-clock scheduling for periodic jobs.

Jobs are wrapped in NonOverlappingJob: a trigger that arrives while the
previous run is still in progress is skipped (logged and counted), never
queued. JobScheduler fires each job as its own task at the times given by
its schedule (UTC) until the shutdown event is set, then waits for running
jobs to finish.
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import datetime, time, timedelta, timezone
from typing import Any, Protocol

from core.logging import generate_cycle_id, log_exception, log_with_context, set_log_context
from core.utils import utc_now
from warehouse_pipeline.common.metrics import record_job_run

logger = logging.getLogger(__name__)


def parse_hhmm(value: str) -> time:
    hours, minutes = value.split(":")
    return time(int(hours), int(minutes), tzinfo=timezone.utc)


class Schedule(Protocol):
    def next_after(self, now: datetime) -> datetime:
        """First fire time strictly after ``now``."""
        ...


@dataclass(frozen=True)
class DailySchedule:
    at: time

    def next_after(self, now: datetime) -> datetime:
        candidate = datetime.combine(now.date(), self.at.replace(tzinfo=timezone.utc))
        if candidate <= now:
            candidate += timedelta(days=1)
        return candidate


@dataclass(frozen=True)
class WeeklySchedule:
    weekday: int  # 0 = Monday
    at: time

    def next_after(self, now: datetime) -> datetime:
        days_ahead = (self.weekday - now.weekday()) % 7
        candidate = datetime.combine(
            now.date() + timedelta(days=days_ahead), self.at.replace(tzinfo=timezone.utc)
        )
        if candidate <= now:
            candidate += timedelta(days=7)
        return candidate


class NonOverlappingJob:
    """Runs ``func(now)``; triggers during a run are skipped.

    Errors from ``func`` are logged and counted but not raised, so one failed
    run never stops the scheduler.
    """

    def __init__(self, name: str, func: Callable[[datetime], Awaitable[Any]]):
        self.name = name
        self._func = func
        self._running = False
        self.runs = 0
        self.skipped = 0

    @property
    def is_running(self) -> bool:
        return self._running

    async def trigger(self, now: datetime | None = None) -> bool:
        """Returns False if the trigger was skipped because a run is in progress."""
        if self._running:
            self.skipped += 1
            record_job_run(self.name, "skipped")
            log_with_context(
                logger,
                logging.WARNING,
                "Skipping job trigger, previous run still in progress",
                job=self.name,
            )
            return False

        self._running = True
        now = now or utc_now()
        set_log_context(cycle_id=generate_cycle_id())
        try:
            log_with_context(logger, logging.INFO, "Job started", job=self.name, trigger_time=now)
            await self._func(now)
            self.runs += 1
            record_job_run(self.name, "success")
            log_with_context(logger, logging.INFO, "Job completed", job=self.name)
        except asyncio.CancelledError:
            record_job_run(self.name, "cancelled")
            raise
        except Exception as e:
            self.runs += 1
            record_job_run(self.name, "failed")
            log_exception(logger, e, "Job failed", job=self.name)
        finally:
            self._running = False
        return True


class JobScheduler:
    """Fires jobs on their schedules until shutdown."""

    def __init__(
        self,
        jobs: list[tuple[Schedule, NonOverlappingJob]],
        clock: Callable[[], datetime] = utc_now,
    ):
        if not jobs:
            raise ValueError("At least one job must be scheduled")
        self.jobs = jobs
        self._clock = clock
        self._tasks: set[asyncio.Task] = set()

    async def run(self, shutdown_event: asyncio.Event) -> None:
        now = self._clock()
        next_runs = [schedule.next_after(now) for schedule, _ in self.jobs]
        for (_, job), next_run in zip(self.jobs, next_runs):
            log_with_context(logger, logging.INFO, "Job scheduled", job=job.name, next_run=next_run)

        try:
            while not shutdown_event.is_set():
                delay = max((min(next_runs) - self._clock()).total_seconds(), 0.0)
                try:
                    await asyncio.wait_for(shutdown_event.wait(), timeout=delay)
                    break
                except asyncio.TimeoutError:
                    pass

                now = self._clock()
                for index, (schedule, job) in enumerate(self.jobs):
                    if next_runs[index] <= now:
                        self._fire(job, next_runs[index])
                        next_runs[index] = schedule.next_after(now)
        finally:
            if self._tasks:
                logger.info("Waiting for running jobs to finish", extra={"jobs": len(self._tasks)})
                await asyncio.gather(*self._tasks, return_exceptions=True)

    def _fire(self, job: NonOverlappingJob, scheduled_for: datetime) -> None:
        task = asyncio.create_task(job.trigger(scheduled_for), name=f"job-{job.name}")
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
