# scheduler.py — In-process trigger for the compliance jobs
# Daily at DAILY_JOB_HOUR:00 local time; monthly on day 1 at 03:00 local time.
# The job_runs watermark makes a missed or doubled tick harmless.

import os
import asyncio
import logging
from datetime import datetime, timedelta, time
from typing import Optional

from dateutil.relativedelta import relativedelta

from clock import Clock
from jobs import ComplianceJobs

logger = logging.getLogger("cumpliros.jobs")

DAILY_JOB_HOUR = int(os.getenv("DAILY_JOB_HOUR", "7"))
MONTHLY_JOB_HOUR = 3


def next_daily_run(now: datetime, clock: Clock, hour: int = DAILY_JOB_HOUR) -> datetime:
    local = now.astimezone(clock.tz)
    candidate = datetime.combine(local.date(), time(hour), tzinfo=clock.tz)
    if candidate <= local:
        candidate = datetime.combine(local.date() + timedelta(days=1), time(hour), tzinfo=clock.tz)
    return candidate


def next_monthly_run(now: datetime, clock: Clock, hour: int = MONTHLY_JOB_HOUR) -> datetime:
    local = now.astimezone(clock.tz)
    first = local.date().replace(day=1)
    candidate = datetime.combine(first, time(hour), tzinfo=clock.tz)
    if candidate <= local:
        candidate = datetime.combine(first + relativedelta(months=1), time(hour), tzinfo=clock.tz)
    return candidate


class JobScheduler:
    def __init__(self, jobs: ComplianceJobs, clock: Optional[Clock] = None):
        self.jobs = jobs
        self.clock = clock or jobs.clock
        self._tasks: list = []

    def start(self) -> None:
        self._tasks = [
            asyncio.create_task(self._loop("daily", next_daily_run, self.jobs.run_daily)),
            asyncio.create_task(self._loop("monthly", next_monthly_run, self.jobs.run_monthly)),
        ]
        logger.info("Job scheduler started")

    async def stop(self) -> None:
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []
        logger.info("Job scheduler stopped")

    async def _loop(self, name, next_run, run) -> None:
        while True:
            when = next_run(self.clock.now(), self.clock)
            delay = max((when - self.clock.now()).total_seconds(), 0)
            logger.info(f"Next {name} job at {when.isoformat()}")
            await asyncio.sleep(delay)
            try:
                await run()
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.error(f"Scheduled {name} job crashed: {exc}", exc_info=True)
