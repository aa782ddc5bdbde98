"""
Broker Background Job Scheduler

One AsyncIOScheduler drives every timer in the process:
1. Deposit Poll - every 10 seconds, reconciles pending payment intents
2. Cleanup Sweep - every 60 seconds, stale locks, resolved deposits, rate-limit windows
3. SMS Polls - one ``sms_poll_<userId>`` job per active order, added and removed
   by the SMS poll supervisor on this same scheduler
"""

import logging
from typing import Optional

from apscheduler.executors.asyncio import AsyncIOExecutor
from apscheduler.jobstores.memory import MemoryJobStore
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from config import Config
from jobs.cleanup_sweeper import CleanupSweeper
from services.deposit_poll_supervisor import DepositPollSupervisor

logger = logging.getLogger(__name__)

DEPOSIT_POLL_JOB_ID = "deposit_poll"
CLEANUP_JOB_ID = "cleanup_sweep"


def build_scheduler() -> AsyncIOScheduler:
    jobstores = {
        'default': MemoryJobStore()
    }
    executors = {
        'default': AsyncIOExecutor()
    }
    job_defaults = {
        'coalesce': True,  # Prevent job pileup
        'max_instances': 1,  # A slow tick never overlaps the next one
        'misfire_grace_time': 30
    }
    return AsyncIOScheduler(
        jobstores=jobstores,
        executors=executors,
        job_defaults=job_defaults,
        timezone='UTC'
    )


class BrokerScheduler:
    """Owns the scheduler and the two global jobs"""

    def __init__(self, scheduler: Optional[AsyncIOScheduler] = None,
                 cleanup_interval_seconds: Optional[int] = None):
        self.scheduler = scheduler or build_scheduler()
        self.cleanup_interval_seconds = (
            Config.CLEANUP_INTERVAL_SECONDS if cleanup_interval_seconds is None else cleanup_interval_seconds
        )

    def setup_jobs(self, deposit_supervisor: DepositPollSupervisor, sweeper: CleanupSweeper) -> None:
        self.scheduler.add_job(
            deposit_supervisor.tick,
            trigger=IntervalTrigger(seconds=deposit_supervisor.interval_seconds),
            id=DEPOSIT_POLL_JOB_ID,
            name="💳 Deposit Poll - pending payment intents",
            replace_existing=True
        )
        logger.info(f"✅ Deposit Poll scheduled every {deposit_supervisor.interval_seconds} seconds")

        self.scheduler.add_job(
            sweeper.run,
            trigger=IntervalTrigger(seconds=self.cleanup_interval_seconds),
            id=CLEANUP_JOB_ID,
            name="🧹 Cleanup Sweep - locks, deposits, rate limits",
            replace_existing=True
        )
        logger.info(f"✅ Cleanup Sweep scheduled every {self.cleanup_interval_seconds} seconds")

    def start(self) -> None:
        self.scheduler.start()
        jobs = self.scheduler.get_jobs()
        logger.info(f"📋 Active jobs: {[f'{job.name} ({job.id})' for job in jobs]}")

    def stop(self) -> None:
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
        logger.info("📴 Broker job scheduler stopped")
