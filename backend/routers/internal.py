# routers/internal.py — Job triggers for external schedulers (cron, Cloud Scheduler)
import os
import secrets
import logging
from typing import Optional

from fastapi import APIRouter, Depends, Header
from sqlalchemy.ext.asyncio import async_sessionmaker

from clock import Clock, get_clock
from database import get_session_factory
from errors import ForbiddenError
from jobs import ComplianceJobs
from mailer import Mailer, get_mailer
from pagination import ok
from storage import ObjectStore, get_object_store

logger = logging.getLogger("cumpliros.jobs")

router = APIRouter(prefix="/api/v1/internal/jobs", tags=["Internal"])


async def verify_internal_secret(x_internal_secret: Optional[str] = Header(None, alias="X-Internal-Secret")):
    expected = os.getenv("INTERNAL_JOBS_SECRET", "")
    if not expected or not x_internal_secret or not secrets.compare_digest(x_internal_secret, expected):
        logger.warning("Rejected internal job trigger with missing or invalid secret")
        raise ForbiddenError("Acceso denegado")


def get_compliance_jobs(
    session_factory: async_sessionmaker = Depends(get_session_factory),
    mailer: Mailer = Depends(get_mailer),
    store: ObjectStore = Depends(get_object_store),
    clock: Clock = Depends(get_clock),
) -> ComplianceJobs:
    return ComplianceJobs(session_factory, mailer, store, clock)


@router.post("/daily", dependencies=[Depends(verify_internal_secret)])
async def trigger_daily(force: bool = False, jobs: ComplianceJobs = Depends(get_compliance_jobs)):
    """Overdue sweep plus reminder emails; at most once per local day unless forced"""
    return ok(await jobs.run_daily(force=force))


@router.post("/monthly", dependencies=[Depends(verify_internal_secret)])
async def trigger_monthly(force: bool = False, jobs: ComplianceJobs = Depends(get_compliance_jobs)):
    """Document retention purge; at most once per month unless forced"""
    return ok(await jobs.run_monthly(force=force))
