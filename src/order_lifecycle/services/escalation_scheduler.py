"""
Anomaly escalation scheduler using APScheduler.

Periodically escalates high and critical anomalies that stayed unresolved
longer than the configured delay.
"""

from typing import Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from order_lifecycle.core.logger import setup_logger
from order_lifecycle.services.anomaly_manager import AnomalyManager

logger = setup_logger(__name__)


class AnomalyEscalationScheduler:
    """Runs ``AnomalyManager.escalate_overdue`` on an interval."""

    def __init__(self, anomaly_manager: AnomalyManager, interval_minutes: int = 30):
        self.anomaly_manager = anomaly_manager
        self.interval_minutes = interval_minutes
        self.scheduler = AsyncIOScheduler()
        self._started = False

    async def start(self):
        """Start scheduler with the escalation job."""
        if self._started:
            logger.warning("Scheduler already started")
            return

        self.scheduler.add_job(
            self._run_escalation,
            IntervalTrigger(minutes=self.interval_minutes),
            id="anomaly_escalation",
            name="Overdue Anomaly Escalation",
            replace_existing=True,
        )
        logger.info(f"Added anomaly escalation job (every {self.interval_minutes} minute(s))")

        self.scheduler.start()
        self._started = True
        logger.info("Anomaly escalation scheduler started")

    async def stop(self):
        """Gracefully stop scheduler."""
        if not self._started:
            return

        self.scheduler.shutdown(wait=False)
        self._started = False
        logger.info("Anomaly escalation scheduler stopped")

    async def _run_escalation(self) -> int:
        """Wrapper for the escalation job with error handling."""
        try:
            escalated = await self.anomaly_manager.escalate_overdue()
            logger.info(f"Escalation run completed: {escalated} anomalies escalated")
            return escalated
        except Exception as e:
            logger.error(f"Anomaly escalation failed: {e}", exc_info=True)
            return 0

    def get_next_run_time(self) -> Optional[str]:
        job = self.scheduler.get_job("anomaly_escalation")
        if job and job.next_run_time:
            return job.next_run_time.strftime("%Y-%m-%d %H:%M:%S")
        return None

    @property
    def is_running(self) -> bool:
        return self._started and self.scheduler.running
