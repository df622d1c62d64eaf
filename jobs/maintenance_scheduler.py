"""
Maintenance Scheduler
Periodically enqueues housekeeping jobs (stale verification session sweep)
onto the durable job queue so the queue workers do the actual work.
"""

import asyncio
import logging
from datetime import datetime, timedelta

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger
from apscheduler.executors.asyncio import AsyncIOExecutor
from apscheduler.jobstores.memory import MemoryJobStore

from jobs.job_queue import JobOptions, JobQueue, VERIFICATION_QUEUE
from services.verification_flow_service import EXPIRE_SESSIONS_JOB

logger = logging.getLogger(__name__)

VERIFICATION_SWEEP_JOB_ID = "verification_session_sweep"


class MaintenanceScheduler:
    """Interval scheduler for queue housekeeping jobs"""

    def __init__(self, job_queue: JobQueue, sweep_interval_seconds: int = 60):
        self.job_queue = job_queue
        self.sweep_interval_seconds = sweep_interval_seconds
        self.scheduler = AsyncIOScheduler(
            jobstores={'default': MemoryJobStore()},
            executors={'default': AsyncIOExecutor()},
            job_defaults={
                'coalesce': True,
                'max_instances': 1,
                'misfire_grace_time': 60,
            },
            timezone='UTC'
        )

    def setup_jobs(self) -> None:
        self.scheduler.add_job(
            self.enqueue_verification_sweep,
            trigger=IntervalTrigger(
                seconds=self.sweep_interval_seconds,
                start_date=datetime.now() + timedelta(seconds=1),
            ),
            id=VERIFICATION_SWEEP_JOB_ID,
            name="🧹 Verification Session Sweep",
            max_instances=1,
            coalesce=True,
            replace_existing=True
        )
        logger.info(f"✅ Verification sweep scheduled every {self.sweep_interval_seconds} seconds")

    async def enqueue_verification_sweep(self) -> None:
        """Put one expire-sessions job on the verification queue"""
        try:
            handle = await self.job_queue.enqueue(
                VERIFICATION_QUEUE, EXPIRE_SESSIONS_JOB, {}, JobOptions(attempts=1)
            )
            logger.debug(f"🧹 Verification sweep enqueued as {handle.id}")
        except Exception as e:
            logger.error(f"❌ Failed to enqueue verification sweep: {e}")

    def start(self) -> None:
        self.setup_jobs()
        self.scheduler.start()
        logger.info("🚀 Maintenance scheduler started")

    async def stop(self) -> None:
        if not self.scheduler.running:
            return
        self.scheduler.shutdown(wait=False)
        # AsyncIOScheduler applies the shutdown on the next event loop iteration
        await asyncio.sleep(0)
        logger.info("🛑 Maintenance scheduler stopped")

    @property
    def running(self) -> bool:
        return self.scheduler.running
