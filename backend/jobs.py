# jobs.py — Scheduled compliance jobs
"""
Daily run:   overdue sweep, upcoming-due reminders, overdue alerts
Monthly run: document retention purge

Each sub-task runs in its own session and its own try/except, so one failure
never stops the rest of the run. A (job, period) watermark row in job_runs
keeps every period at-most-once, including across concurrent runners.
"""
import os
import logging
from typing import Any, Awaitable, Callable, Dict, Optional

from opentelemetry import trace
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from clock import Clock
from mailer import Mailer
from models import JobRun
from services.documents import DocumentsService
from services.notifications import NotificationsService
from services.obligations import ObligationsService
from storage import ObjectStore

logger = logging.getLogger("cumpliros.jobs")
tracer = trace.get_tracer("cumpliros.jobs")

DAILY_JOB = "daily"
MONTHLY_JOB = "monthly"


def _flag(name: str, default: str = "true") -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes", "on")


def daily_enabled() -> bool:
    return _flag("JOBS_ENABLED")


def retention_enabled() -> bool:
    return _flag("DOCUMENT_RETENTION_ENABLED")


class ComplianceJobs:
    def __init__(
        self,
        session_factory: async_sessionmaker,
        mailer: Mailer,
        object_store: ObjectStore,
        clock: Optional[Clock] = None,
    ):
        self.session_factory = session_factory
        self.mailer = mailer
        self.object_store = object_store
        self.clock = clock or Clock()

    def daily_period(self) -> str:
        return self.clock.today().isoformat()

    def monthly_period(self) -> str:
        return self.clock.today().strftime("%Y-%m")

    async def run_daily(self, force: bool = False) -> Dict[str, Any]:
        if not daily_enabled():
            logger.info("Daily job disabled (JOBS_ENABLED=false)")
            return {"skipped": True, "reason": "disabled"}

        period = self.daily_period()
        with tracer.start_as_current_span("jobs.daily") as span:
            span.set_attribute("job.period", period)
            run_id = await self._claim(DAILY_JOB, period, force)
            if run_id is None:
                logger.info(f"Daily job already ran for {period}; skipping")
                return {"skipped": True, "reason": "already_ran", "period": period}

            logger.info(f"Daily job started for {period}")
            summary: Dict[str, Any] = {"job": DAILY_JOB, "period": period, "errors": []}
            summary["overdueMarked"] = await self._step(
                "overdue_sweep", summary,
                lambda db: ObligationsService(db, self.clock).update_overdue_obligations(),
            )
            summary["upcomingEmails"] = await self._step(
                "upcoming_notifications", summary,
                lambda db: NotificationsService(db, self.mailer, self.clock).send_upcoming_notifications(),
            )
            summary["overdueEmails"] = await self._step(
                "overdue_notifications", summary,
                lambda db: NotificationsService(db, self.mailer, self.clock).send_overdue_notifications(),
            )
            span.set_attribute("job.errors", len(summary["errors"]))
            await self._finish(run_id, summary)
            logger.info(
                f"Daily job finished for {period}: overdue={summary['overdueMarked']} "
                f"upcoming_emails={summary['upcomingEmails']} overdue_emails={summary['overdueEmails']} "
                f"errors={len(summary['errors'])}"
            )
            return summary

    async def run_monthly(self, force: bool = False) -> Dict[str, Any]:
        if not retention_enabled():
            logger.info("Monthly job disabled (DOCUMENT_RETENTION_ENABLED=false)")
            return {"skipped": True, "reason": "disabled"}

        period = self.monthly_period()
        with tracer.start_as_current_span("jobs.monthly") as span:
            span.set_attribute("job.period", period)
            run_id = await self._claim(MONTHLY_JOB, period, force)
            if run_id is None:
                logger.info(f"Monthly job already ran for {period}; skipping")
                return {"skipped": True, "reason": "already_ran", "period": period}

            logger.info(f"Monthly job started for {period}")
            summary: Dict[str, Any] = {"job": MONTHLY_JOB, "period": period, "errors": []}
            summary["documentsPurged"] = await self._step(
                "document_retention", summary,
                lambda db: DocumentsService(db, self.object_store, self.clock).purge_expired_documents(),
            )
            span.set_attribute("job.errors", len(summary["errors"]))
            await self._finish(run_id, summary)
            logger.info(f"Monthly job finished for {period}: purged={summary['documentsPurged']}")
            return summary

    async def _step(
        self, name: str, summary: Dict[str, Any], work: Callable[[AsyncSession], Awaitable[int]]
    ) -> int:
        try:
            async with self.session_factory() as db:
                return await work(db)
        except Exception as exc:
            logger.error(f"Job step {name} failed: {exc}", exc_info=True)
            summary["errors"].append(name)
            return 0

    async def _claim(self, job_name: str, period_key: str, force: bool) -> Optional[str]:
        """Insert the watermark row; None when another run already owns the period."""
        async with self.session_factory() as db:
            if force:
                existing = (await db.execute(
                    select(JobRun).where(JobRun.job_name == job_name, JobRun.period_key == period_key)
                )).scalar_one_or_none()
                if existing:
                    existing.started_at = self.clock.now()
                    existing.finished_at = None
                    await db.commit()
                    return existing.id

            run = JobRun(job_name=job_name, period_key=period_key, started_at=self.clock.now())
            db.add(run)
            try:
                await db.commit()
            except IntegrityError:
                await db.rollback()
                return None
            return run.id

    async def _finish(self, run_id: str, summary: Dict[str, Any]) -> None:
        async with self.session_factory() as db:
            run = await db.get(JobRun, run_id)
            if run:
                run.finished_at = self.clock.now()
                run.summary = summary
                await db.commit()
