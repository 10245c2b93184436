"""
Ingestion Scheduler - periodic batch runs.

Wraps an APScheduler AsyncIOScheduler so the batch fires on a fixed
interval. Overlapping runs are never started: a tick that arrives while
the previous batch is still going is coalesced away.
"""

from datetime import datetime, timedelta, timezone
from typing import Awaitable, Callable, Optional

import structlog
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from regwatch.services.ingestion.base import RunReport

logger = structlog.get_logger(__name__)

JOB_ID = "regwatch_ingestion"


class IngestionScheduler:
    """
    Schedules and runs periodic ingestion batches.

    Features:
    - Fixed interval between batch starts
    - At most one batch in flight
    - Optional immediate first run
    - Last report kept for status queries
    """

    def __init__(
        self,
        run_batch: Callable[[], Awaitable[RunReport]],
        interval_minutes: int = 30,
        scheduler: Optional[AsyncIOScheduler] = None,
    ):
        """
        Args:
            run_batch: Coroutine function executing one batch
            interval_minutes: Minutes between batch starts
            scheduler: Scheduler instance (created if omitted)
        """
        self.run_batch = run_batch
        self.interval = timedelta(minutes=interval_minutes)
        self.scheduler = scheduler or AsyncIOScheduler(timezone=timezone.utc)

        self._running = False
        self._last_run: Optional[datetime] = None
        self._last_report: Optional[RunReport] = None

    def start(self, run_immediately: bool = True):
        """Register the batch job and start the scheduler. Needs a running event loop."""
        if self._running:
            logger.warning("Scheduler already running")
            return

        # next_run_time=None would add the job paused
        extra = {"next_run_time": datetime.now(timezone.utc)} if run_immediately else {}
        self.scheduler.add_job(
            self._run_batch,
            IntervalTrigger(minutes=int(self.interval.total_seconds() // 60)),
            id=JOB_ID,
            name="Regulatory alert ingestion",
            replace_existing=True,
            max_instances=1,
            coalesce=True,
            **extra,
        )
        self.scheduler.start()
        self._running = True
        logger.info("Scheduler started", interval_minutes=self.interval.total_seconds() / 60)

    def stop(self):
        if not self._running:
            return
        self.scheduler.shutdown(wait=False)
        self._running = False
        logger.info("Ingestion scheduler stopped")

    async def _run_batch(self):
        started = datetime.now(timezone.utc)
        logger.info("Starting scheduled ingestion")

        try:
            report = await self.run_batch()
        except Exception as e:
            logger.error("Scheduled ingestion failed", error=str(e), exc_info=True)
            return

        self._last_run = started
        self._last_report = report
        for result in report.results.values():
            logger.info(str(result))
        logger.info(
            "Scheduled ingestion completed",
            ok=report.ok,
            duration_seconds=round(report.duration_seconds, 1),
            **report.totals,
        )

    async def run_now(self) -> RunReport:
        """Trigger an immediate batch outside the schedule."""
        await self._run_batch()
        return self._last_report

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def last_run(self) -> Optional[datetime]:
        return self._last_run

    def get_status(self) -> dict:
        """Get scheduler status."""
        job = self.scheduler.get_job(JOB_ID) if self._running else None
        next_run = job.next_run_time if job else None

        return {
            "running": self._running,
            "last_run": self._last_run.isoformat() if self._last_run else None,
            "next_run": next_run.isoformat() if next_run else None,
            "interval_minutes": self.interval.total_seconds() / 60,
            "last_report": self._last_report.to_dict() if self._last_report else None,
        }
