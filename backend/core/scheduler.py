"""
LEDGER ENGINE: SETTLEMENT SCHEDULER

Runs SettlementSweeper on a daily cron trigger at the cutoff hour in the
operating timezone. The scheduler itself is only a trigger: the sweep is an
explicit component, and `run_now` invokes the same entry point synchronously.

Usage:
    scheduler = SettlementScheduler(sweeper, timezone="Asia/Kolkata", hour=16)
    scheduler.start()
    ...
    scheduler.shutdown()
"""

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.jobstores.memory import MemoryJobStore
from typing import Any, Dict, Optional
import logging

from core.settlement_clock import DEFAULT_TIMEZONE, DEFAULT_CUTOFF_HOUR
from core.settlement_sweeper import SettlementSweeper

logger = logging.getLogger(__name__)

SETTLEMENT_JOB_ID = "settlement_sweeper"


class SettlementScheduler:
    """Cron wrapper around a SettlementSweeper."""

    def __init__(
        self,
        sweeper: SettlementSweeper,
        timezone: str = DEFAULT_TIMEZONE,
        hour: int = DEFAULT_CUTOFF_HOUR,
        minute: int = 0
    ):
        self.sweeper = sweeper
        self.timezone = timezone
        self.hour = hour
        self.minute = minute
        self.scheduler = AsyncIOScheduler(
            jobstores={"default": MemoryJobStore()},
            job_defaults={
                "coalesce": True,        # Collapse missed runs into one
                "max_instances": 1,
                "misfire_grace_time": 300,
            },
            timezone=timezone
        )
        self._started = False

    def setup_jobs(self) -> None:
        self.scheduler.add_job(
            self._scheduled_run,
            trigger=CronTrigger(hour=self.hour, minute=self.minute, timezone=self.timezone),
            id=SETTLEMENT_JOB_ID,
            name="Daily settlement sweep",
            max_instances=1,
            coalesce=True,
            replace_existing=True
        )
        logger.info(
            f"[SCHEDULER] Settlement sweep scheduled daily at "
            f"{self.hour:02d}:{self.minute:02d} {self.timezone}"
        )

    def start(self) -> None:
        if self._started:
            return
        self.setup_jobs()
        self.scheduler.start()
        self._started = True
        logger.info("[SCHEDULER] Started")

    def shutdown(self) -> None:
        # AsyncIOScheduler finishes stopping on a later loop iteration
        if self._started:
            self._started = False
            self.scheduler.shutdown(wait=False)
            logger.info("[SCHEDULER] Stopped")

    @property
    def running(self) -> bool:
        return self._started

    def next_run_time(self) -> Optional[str]:
        job = self.scheduler.get_job(SETTLEMENT_JOB_ID)
        if job is None or job.next_run_time is None:
            return None
        return job.next_run_time.isoformat()

    async def run_now(self) -> Dict[str, Any]:
        """Manual trigger, same code path as the cron job."""
        logger.info("[SCHEDULER] Manual settlement sweep requested")
        return await self.sweeper.run_once()

    async def _scheduled_run(self) -> None:
        try:
            report = await self.sweeper.run_once()
            logger.info(
                f"[SCHEDULER] Sweep {report['status']}: settled={report['settled']} "
                f"skipped_reason={report['skipped_reason']}"
            )
        except Exception as e:
            # The next cron tick retries; the sweep is idempotent
            logger.exception(f"[SCHEDULER] Settlement sweep crashed: {e}")
