"""
VaultX Monitor Scheduler
Runs the position monitor on a fixed interval inside the API process
"""

import logging
from typing import Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from agents.position_monitor import PositionMonitor

logger = logging.getLogger("MonitorScheduler")


class MonitorScheduler:
    """
    Interval job around PositionMonitor.run.

    At most one run at a time in this process. Runs started by the cron
    route are kept apart per wallet by the lease.
    """

    JOB_ID = "position_monitor"

    def __init__(self, monitor: PositionMonitor, interval_minutes: int = 5,
                 scheduler: Optional[AsyncIOScheduler] = None):
        self.monitor = monitor
        self.interval_minutes = interval_minutes
        self.scheduler = scheduler or AsyncIOScheduler()
        self._setup_jobs()

    def _setup_jobs(self):
        self.scheduler.add_job(
            self.run_once,
            IntervalTrigger(minutes=self.interval_minutes),
            id=self.JOB_ID,
            name="Monitor positions and rebalance",
            max_instances=1,
            coalesce=True,
            replace_existing=True,
        )
        logger.info(f"[MonitorScheduler] Job configured every {self.interval_minutes} min")

    async def run_once(self):
        try:
            summary = await self.monitor.run()
        except Exception as e:
            logger.error(f"[MonitorScheduler] Monitor run failed: {e}")
            return None
        logger.info(f"[MonitorScheduler] Run complete: {summary.counts()}")
        return summary

    def start(self):
        self.scheduler.start()
        logger.info("[MonitorScheduler] Started")

    def stop(self):
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
        logger.info("[MonitorScheduler] Stopped")
