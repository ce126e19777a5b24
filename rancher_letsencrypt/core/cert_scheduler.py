"""
Certificate renewal scheduler.

Wakes the renewal orchestrator daily at the configured hour, on an
optional fixed interval, and once at startup, using APScheduler.
"""

import logging
from datetime import datetime, timezone
from typing import Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.date import DateTrigger
from apscheduler.triggers.interval import IntervalTrigger

from rancher_letsencrypt.config import Settings
from rancher_letsencrypt.core.renewal_orchestrator import RenewalOrchestrator, RenewalResult

logger = logging.getLogger(__name__)

# Overlapping fires are dropped and missed ones merged
_JOB_DEFAULTS = {"max_instances": 1, "coalesce": True, "misfire_grace_time": 3600}


class CertScheduler:
    """
    Background certificate renewal scheduler.

    Runs periodic jobs to:
    - Check the published certificate and renew it when due
    - Re-check on a fixed interval when CHECK_INTERVAL_HOURS is set
    """

    def __init__(
        self,
        orchestrator: RenewalOrchestrator,
        settings: Settings,
        scheduler: Optional[AsyncIOScheduler] = None,
    ):
        self.orchestrator = orchestrator
        self.settings = settings
        self.scheduler = scheduler or AsyncIOScheduler(job_defaults=_JOB_DEFAULTS)
        self._started = False

    async def start(self) -> None:
        """Start the renewal scheduler."""
        if self._started:
            logger.warning("Certificate scheduler already started")
            return

        self.scheduler.add_job(
            self._check_renewals,
            CronTrigger(hour=self.settings.renewal_time, minute=0),
            id="cert_renewal_check",
            name="Certificate Renewal Check",
            replace_existing=True,
        )

        if self.settings.check_interval_hours:
            self.scheduler.add_job(
                self._check_renewals,
                IntervalTrigger(hours=self.settings.check_interval_hours),
                id="cert_interval_check",
                name="Certificate Interval Check",
                replace_existing=True,
            )

        self.scheduler.add_job(
            self._initial_check,
            DateTrigger(run_date=datetime.now(timezone.utc)),
            id="cert_initial_check",
            name="Initial Certificate Check",
            replace_existing=True,
        )

        self.scheduler.start()
        self._started = True
        logger.info(f"Certificate renewal scheduler started (daily at {self.settings.renewal_time:02d}:00)")

    async def stop(self) -> None:
        """Stop the scheduler, then abort any in-flight renewal and wait for its cleanup."""
        if self._started:
            self.scheduler.shutdown(wait=False)
            await self.orchestrator.shutdown()
            self._started = False
            logger.info("Certificate renewal scheduler stopped")

    async def _initial_check(self) -> None:
        """Load the published certificate and run a first check on startup."""
        logger.info("Running initial certificate check")
        await self.orchestrator.startup()
        await self._check_renewals()

    async def _check_renewals(self) -> RenewalResult:
        result = await self.orchestrator.tick()
        logger.info(f"Certificate renewal check complete: {result.value}")

        next_runs = [
            job["next_run"] for job in self.get_next_run_times().values() if job["next_run"]
        ]
        if next_runs:
            logger.info(f"Next certificate check at {min(next_runs)}")
        return result

    def get_next_run_times(self) -> dict:
        """Get next scheduled run times for all jobs."""
        jobs = {}
        for job in self.scheduler.get_jobs():
            next_run = getattr(job, "next_run_time", None)
            jobs[job.id] = {"name": job.name, "next_run": next_run.isoformat() if next_run else None}
        return jobs
