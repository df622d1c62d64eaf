#!/usr/bin/env python3
"""
Queue Worker
Fixed-size pool of asyncio tasks draining one named queue
"""

import asyncio
import logging
import os
import time
import uuid
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Protocol, Set

from config import Config
from jobs.job_queue import JobQueue
from models import BackgroundJob, JobStatus

logger = logging.getLogger(__name__)


class JobProcessor(Protocol):
    async def process(self, job: BackgroundJob) -> Any:
        ...


@dataclass
class JobResult:
    """Job execution result"""

    success: bool
    job_id: str
    result: Any = None
    error_message: Optional[str] = None
    duration_ms: Optional[int] = None
    final_status: Optional[str] = None


class QueueWorker:
    """
    Worker pool for a single queue.

    ``concurrency`` bounds how many jobs of this queue run at once. A job
    handed to the processor carries ``attempts_made`` equal to the current
    attempt number; a raised exception fails the attempt and the queue
    decides between retry and permanent failure.

    While running, a maintenance task refreshes the lease of in-flight jobs
    and reclaims jobs whose lease expired on a dead worker. Jobs still
    running when ``stop`` gives up on them are handed back to the queue.
    """

    def __init__(
        self,
        job_queue: JobQueue,
        queue_name: str,
        processor: JobProcessor,
        concurrency: int = 1,
        poll_interval: Optional[float] = None,
        metrics=None,
        worker_id: Optional[str] = None,
        lock_refresh_interval: Optional[float] = None,
    ):
        if concurrency < 1:
            raise ValueError("Worker concurrency must be at least 1")

        self.job_queue = job_queue
        self.queue_name = queue_name
        self.processor = processor
        self.concurrency = concurrency
        self.poll_interval = (
            Config.QUEUE_POLL_INTERVAL_SECONDS if poll_interval is None else poll_interval
        )
        self.lock_refresh_interval = (
            Config.QUEUE_LOCK_REFRESH_SECONDS if lock_refresh_interval is None else lock_refresh_interval
        )
        self.metrics = metrics
        self.worker_id = worker_id or f"{queue_name}_{os.getpid()}_{uuid.uuid4().hex[:8]}"

        self.running = False
        self._tasks: List[asyncio.Task] = []
        self._lock_task: Optional[asyncio.Task] = None
        self._in_flight: Set[str] = set()
        self._stop_event = asyncio.Event()
        self.processed_count = 0
        self.failed_count = 0

        logger.info(
            f"Initialized queue worker {self.worker_id} for '{queue_name}' "
            f"(concurrency={concurrency})"
        )

    async def start(self) -> None:
        """Spawn the worker loops; returns immediately"""
        if self.running:
            logger.warning(f"Queue worker for '{self.queue_name}' already running")
            return

        self.running = True
        self._stop_event.clear()
        self._tasks = [
            asyncio.create_task(self._worker_loop(slot), name=f"{self.worker_id}:{slot}")
            for slot in range(self.concurrency)
        ]
        self._lock_task = asyncio.create_task(
            self._lock_maintenance_loop(), name=f"{self.worker_id}:locks"
        )
        logger.info(f"🚀 Started {self.concurrency} worker(s) for queue '{self.queue_name}'")

    async def stop(self, grace_period: float = 10.0) -> None:
        """
        Stop polling, let in-flight jobs finish within the grace period, then cancel.

        Jobs cancelled mid-run are released back to the queue as waiting.
        """
        if not self.running:
            return

        logger.info(f"Stopping queue worker for '{self.queue_name}'")
        self.running = False
        self._stop_event.set()

        if self._tasks:
            _, pending = await asyncio.wait(self._tasks, timeout=grace_period)
            for task in pending:
                task.cancel()
            await asyncio.gather(*pending, return_exceptions=True)

        if self._lock_task is not None:
            self._lock_task.cancel()
            await asyncio.gather(self._lock_task, return_exceptions=True)
            self._lock_task = None

        self._tasks = []
        self._in_flight.clear()
        await self.job_queue.release_worker_jobs(self.worker_id)
        logger.info(f"Queue worker for '{self.queue_name}' stopped")

    async def run_once(self) -> List[JobResult]:
        """
        Claim up to ``concurrency`` ready jobs and process them in parallel.

        Used for one-shot draining and tests; returns one result per job run.
        """
        await self.job_queue.recover_stalled(self.queue_name)

        jobs: List[BackgroundJob] = []
        for _ in range(self.concurrency):
            job = await self.job_queue.claim_next(self.queue_name, self.worker_id)
            if job is None:
                break
            jobs.append(job)

        if not jobs:
            return []
        return list(await asyncio.gather(*(self._execute(job) for job in jobs)))

    async def drain(self, max_rounds: int = 100) -> List[JobResult]:
        """Repeat run_once until no ready job remains"""
        results: List[JobResult] = []
        for _ in range(max_rounds):
            batch = await self.run_once()
            if not batch:
                break
            results.extend(batch)
        return results

    async def _worker_loop(self, slot: int) -> None:
        while self.running:
            try:
                job = await self.job_queue.claim_next(self.queue_name, self.worker_id)
                if job is None:
                    await self._idle()
                    continue
                await self._execute(job)

            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"Error in '{self.queue_name}' worker loop {slot}: {e}", exc_info=True)
                await self._idle()

    async def _lock_maintenance_loop(self) -> None:
        """Keep leases of running jobs alive and reclaim jobs stranded by dead workers"""
        while self.running:
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self.lock_refresh_interval)
                return
            except asyncio.TimeoutError:
                pass

            try:
                await self.job_queue.refresh_locks(self.worker_id, set(self._in_flight))
                await self.job_queue.recover_stalled(self.queue_name)
            except Exception as e:
                logger.error(f"Error maintaining job locks for '{self.queue_name}': {e}")

    async def _idle(self) -> None:
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=self.poll_interval)
        except asyncio.TimeoutError:
            pass

    async def _execute(self, job: BackgroundJob) -> JobResult:
        """Run one claimed job and record its outcome on the queue"""
        self._in_flight.add(job.id)
        try:
            return await self._run_job(job)
        finally:
            self._in_flight.discard(job.id)

    async def _run_job(self, job: BackgroundJob) -> JobResult:
        start = time.perf_counter()
        logger.info(
            f"🔄 {self.queue_name}: job {job.id} ({job.job_type}) "
            f"attempt {job.attempts_made} of {job.max_attempts}"
        )

        try:
            result = await self.processor.process(job)
        except Exception as e:
            duration_ms = int((time.perf_counter() - start) * 1000)
            error_msg = str(e) or type(e).__name__
            updated = await self.job_queue.fail(job.id, error_msg)
            self.failed_count += 1
            self._count(job, "failed")
            return JobResult(
                success=False,
                job_id=job.id,
                error_message=error_msg,
                duration_ms=duration_ms,
                final_status=updated.status,
            )

        duration_ms = int((time.perf_counter() - start) * 1000)
        await self.job_queue.complete(job.id, result)
        self.processed_count += 1
        self._count(job, "success")
        logger.info(f"✅ {self.queue_name}: job {job.id} completed in {duration_ms}ms")
        return JobResult(
            success=True,
            job_id=job.id,
            result=result,
            duration_ms=duration_ms,
            final_status=JobStatus.COMPLETED.value,
        )

    def _count(self, job: BackgroundJob, status: str) -> None:
        if self.metrics is None:
            return
        try:
            self.metrics.increment_jobs_processed(self.queue_name, job.job_type, status)
        except Exception as e:
            logger.warning(f"⚠️ Failed to record job metrics: {e}")

    def get_status(self) -> Dict[str, Any]:
        return {
            "queue": self.queue_name,
            "worker_id": self.worker_id,
            "running": self.running,
            "concurrency": self.concurrency,
            "processed": self.processed_count,
            "failed": self.failed_count,
        }
