"""
Match Sweep Worker

Owns an AsyncIOScheduler and the table of reconciliation jobs it runs:
- waiting_match_sweep: re-attempts matching for WAITING_MATCH records
- small_deposit_auto_approve: bulk approves small waiting deposits
  (only when SMALL_DEPOSIT_AUTO_APPROVE_LIMIT > 0)

Jobs never overlap themselves (max_instances=1) and missed runs are
coalesced into one.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Awaitable, Callable, Dict, Any, Optional

from apscheduler.executors.asyncio import AsyncIOExecutor
from apscheduler.jobstores.memory import MemoryJobStore
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from reconciliation.services.reconciliation_service import ReconciliationService

logger = logging.getLogger(__name__)


SWEEP_JOB_ID = "waiting_match_sweep"
AUTO_APPROVE_JOB_ID = "small_deposit_auto_approve"


@dataclass
class JobSpec:
    """One scheduled job"""
    job_id: str
    name: str
    func: Callable[[], Awaitable[Any]]
    interval_seconds: int
    last_run_at: Optional[datetime] = None
    last_result: Optional[Dict[str, Any]] = None
    last_error: Optional[str] = None
    runs: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "job_id": self.job_id,
            "name": self.name,
            "interval_seconds": self.interval_seconds,
            "last_run_at": self.last_run_at.isoformat() if self.last_run_at else None,
            "last_result": self.last_result,
            "last_error": self.last_error,
            "runs": self.runs,
        }


class MatchSweepWorker:
    """
    Background scheduler for the reconciliation engine.

    The worker owns its scheduler; start() and stop() are idempotent.
    """

    def __init__(self, service: ReconciliationService, settings=None):
        if settings is None:
            from config import get_settings
            settings = get_settings()

        self.service = service
        self.settings = settings
        self.jobs: Dict[str, JobSpec] = {}

        self.scheduler = AsyncIOScheduler(
            jobstores={'default': MemoryJobStore()},
            executors={'default': AsyncIOExecutor()},
            job_defaults={
                'coalesce': True,
                'max_instances': 1,
                'misfire_grace_time': 60
            },
            timezone='UTC'
        )

        self._register_jobs()

    def _register_jobs(self):
        interval = max(int(self.settings.SWEEP_INTERVAL_SECONDS), 1)
        self.jobs[SWEEP_JOB_ID] = JobSpec(
            job_id=SWEEP_JOB_ID,
            name="Re-match waiting notifications",
            func=self._sweep,
            interval_seconds=interval,
        )

        if float(self.settings.SMALL_DEPOSIT_AUTO_APPROVE_LIMIT) > 0:
            self.jobs[AUTO_APPROVE_JOB_ID] = JobSpec(
                job_id=AUTO_APPROVE_JOB_ID,
                name="Auto-approve small deposits",
                func=self._auto_approve,
                interval_seconds=interval,
            )

    # ==================== JOBS ====================

    async def _sweep(self) -> Dict[str, Any]:
        result = await self.service.sweep_waiting_matches()
        return result.to_dict()

    async def _auto_approve(self) -> Dict[str, Any]:
        result = await self.service.auto_approve_small_deposits(
            self.settings.SMALL_DEPOSIT_AUTO_APPROVE_LIMIT,
            operator_id="auto-approve"
        )
        return {"successful": len(result.successful), "failed": len(result.failed)}

    async def run_job(self, job_id: str) -> Dict[str, Any]:
        """
        Run one job now. Errors are recorded on the job and logged;
        the scheduler keeps running.
        """
        job = self.jobs.get(job_id)
        if job is None:
            raise KeyError(f"Unknown job: {job_id}")

        job.last_run_at = datetime.now(timezone.utc)
        job.runs += 1
        try:
            job.last_result = await job.func()
            job.last_error = None
            logger.info(f"Job {job_id} completed: {job.last_result}")
        except Exception as e:
            job.last_error = str(e)
            logger.error(f"Job {job_id} failed: {e}", exc_info=True)
            from sentry_integration import capture_exception
            capture_exception(e, job_id=job_id)
        return job.to_dict()

    # ==================== LIFECYCLE ====================

    @property
    def running(self) -> bool:
        return self.scheduler.running

    def start(self):
        if self.scheduler.running:
            return

        for job in self.jobs.values():
            self.scheduler.add_job(
                self.run_job,
                trigger=IntervalTrigger(seconds=job.interval_seconds),
                args=[job.job_id],
                id=job.job_id,
                name=job.name,
                max_instances=1,
                coalesce=True,
                replace_existing=True
            )
            logger.info(f"Scheduled {job.job_id} every {job.interval_seconds}s")

        self.scheduler.start()
        logger.info("Match sweep worker started")

    def stop(self):
        if not self.scheduler.running:
            return
        self.scheduler.shutdown(wait=False)
        logger.info("Match sweep worker stopped")

    def status(self) -> Dict[str, Any]:
        scheduled = {}
        if self.scheduler.running:
            for job in self.scheduler.get_jobs():
                scheduled[job.id] = job.next_run_time.isoformat() if job.next_run_time else None

        return {
            "running": self.scheduler.running,
            "jobs": [
                {**job.to_dict(), "next_run_at": scheduled.get(job.job_id)}
                for job in self.jobs.values()
            ],
        }
