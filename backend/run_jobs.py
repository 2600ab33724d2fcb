"""
Cron entry point for the compliance jobs.

    python run_jobs.py daily            # overdue sweep + reminders
    python run_jobs.py monthly          # document retention purge
    python run_jobs.py daily --force    # ignore the per-period watermark
"""
import sys
import json
import asyncio
import argparse
import logging
import os

from clock import Clock
from database import async_session_maker, close_db
from jobs import ComplianceJobs
from mailer import get_mailer
from storage import get_object_store

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO"),
    format="%(asctime)s [%(name)s] %(levelname)s %(message)s",
)
logger = logging.getLogger("cumpliros.jobs")


async def main(job: str, force: bool) -> int:
    jobs = ComplianceJobs(async_session_maker, get_mailer(), get_object_store(), Clock())
    try:
        if job == "daily":
            summary = await jobs.run_daily(force=force)
        else:
            summary = await jobs.run_monthly(force=force)
    finally:
        await close_db()

    print(json.dumps(summary, indent=2, default=str))
    return 1 if summary.get("errors") else 0


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Run CumpliRos scheduled jobs")
    parser.add_argument("job", choices=["daily", "monthly"])
    parser.add_argument("--force", action="store_true", help="run even if this period already ran")
    args = parser.parse_args()
    sys.exit(asyncio.run(main(args.job, args.force)))
