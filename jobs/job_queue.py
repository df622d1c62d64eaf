#!/usr/bin/env python3
"""
Durable Job Queue
Database-backed named queues with retry/backoff and single-worker job claiming

Jobs live in the ``background_jobs`` table. A worker claims the oldest ready
job through a conditional update (``WHERE status = 'waiting'``) so two workers
can never hold the same job. A claim is a lease: it expires after
``lock_timeout_seconds`` unless the worker refreshes it, and expired leases are
handed back to the queue so a crashed or stopped worker never strands a job. Failed attempts are rescheduled with fixed or
exponential backoff until ``max_attempts`` is exhausted.
"""

import logging
from dataclasses import dataclass, asdict
from datetime import datetime, timedelta
from typing import Any, Callable, Collection, Dict, Iterable, Optional

from sqlalchemy import select, update, func, and_
from sqlalchemy.ext.asyncio import async_sessionmaker

from config import Config
from database import async_managed_session, get_session_factory
from models import BackgroundJob, BackoffType, JobStatus
from utils.exceptions import NotFoundError
from utils.helpers import utc_now

logger = logging.getLogger(__name__)

# Named queues
VERIFICATION_QUEUE = "verification"
NOTIFICATIONS_QUEUE = "notifications"
ONCHAIN_QUEUE = "onchain"

ALL_QUEUES = (VERIFICATION_QUEUE, NOTIFICATIONS_QUEUE, ONCHAIN_QUEUE)


@dataclass
class JobOptions:
    """Retry policy attached to a job at enqueue time"""

    attempts: int = 1
    backoff_type: BackoffType = BackoffType.FIXED
    backoff_delay_ms: int = 0
    delay_ms: int = 0  # Initial delay before the first attempt


@dataclass(frozen=True)
class JobHandle:
    id: str
    queue_name: str
    job_type: str


@dataclass
class QueueCounts:
    """Per-status job counts for one queue"""

    name: str
    waiting: int = 0
    active: int = 0
    completed: int = 0
    failed: int = 0
    delayed: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def compute_backoff_ms(backoff_type: BackoffType, delay_ms: int, attempts_made: int) -> int:
    """
    Delay before the next attempt.

    fixed:       delay
    exponential: delay * 2 ** (attempts_made - 1)
    """
    if delay_ms <= 0:
        return 0
    if backoff_type == BackoffType.EXPONENTIAL:
        return delay_ms * (2 ** max(attempts_made - 1, 0))
    return delay_ms


class JobQueue:
    """Database-backed named job queues"""

    def __init__(
        self,
        session_factory: Optional[async_sessionmaker] = None,
        clock: Callable[[], datetime] = utc_now,
        lock_timeout_seconds: Optional[int] = None,
    ):
        self.session_factory = session_factory or get_session_factory()
        self.clock = clock
        self.lock_timeout = timedelta(
            seconds=lock_timeout_seconds or Config.QUEUE_LOCK_TIMEOUT_SECONDS
        )

    async def enqueue(
        self,
        queue_name: str,
        job_type: str,
        payload: Optional[Dict[str, Any]] = None,
        options: Optional[JobOptions] = None,
    ) -> JobHandle:
        """Persist a new waiting job; safe for concurrent producers"""
        options = options or JobOptions()
        if options.attempts < 1:
            raise ValueError("Job attempts must be at least 1")

        now = self.clock()
        job = BackgroundJob(
            queue_name=queue_name,
            job_type=job_type,
            payload=payload or {},
            status=JobStatus.WAITING.value,
            attempts_made=0,
            max_attempts=options.attempts,
            backoff_type=options.backoff_type.value,
            backoff_delay_ms=options.backoff_delay_ms,
            run_at=now + timedelta(milliseconds=options.delay_ms),
            created_at=now,
            updated_at=now,
        )

        async with async_managed_session(self.session_factory) as session:
            session.add(job)
            await session.flush()
            job_id = job.id

        logger.info(f"📥 Enqueued job {job_id} ({job_type}) on queue '{queue_name}'")
        return JobHandle(id=job_id, queue_name=queue_name, job_type=job_type)

    async def get(self, job_id: str) -> BackgroundJob:
        async with async_managed_session(self.session_factory) as session:
            job = await session.get(BackgroundJob, job_id)
            if job is None:
                raise NotFoundError("Job not found")
            return job

    async def claim_next(self, queue_name: str, worker_id: str) -> Optional[BackgroundJob]:
        """
        Claim the oldest ready job on the queue.

        The waiting -> active move is a compare-and-swap; if another worker
        wins the race for a candidate, the next candidate is tried.
        """
        now = self.clock()
        async with async_managed_session(self.session_factory) as session:
            candidates = (
                await session.execute(
                    select(BackgroundJob.id)
                    .where(
                        BackgroundJob.queue_name == queue_name,
                        BackgroundJob.status == JobStatus.WAITING.value,
                        BackgroundJob.run_at <= now,
                    )
                    .order_by(BackgroundJob.run_at.asc(), BackgroundJob.created_at.asc())
                    .limit(10)
                )
            ).scalars().all()

            for job_id in candidates:
                result = await session.execute(
                    update(BackgroundJob)
                    .where(
                        BackgroundJob.id == job_id,
                        BackgroundJob.status == JobStatus.WAITING.value,
                    )
                    .values(
                        status=JobStatus.ACTIVE.value,
                        attempts_made=BackgroundJob.attempts_made + 1,
                        locked_by=worker_id,
                        locked_at=now,
                        lock_expires_at=now + self.lock_timeout,
                        started_at=now,
                        updated_at=now,
                    )
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount > 0:
                    job = (
                        await session.execute(
                            select(BackgroundJob)
                            .where(BackgroundJob.id == job_id)
                            .execution_options(populate_existing=True)
                        )
                    ).scalar_one()
                    logger.debug(f"🔒 Worker {worker_id} claimed job {job_id}")
                    return job

        return None

    async def complete(self, job_id: str, result: Any = None) -> None:
        now = self.clock()
        async with async_managed_session(self.session_factory) as session:
            outcome = await session.execute(
                update(BackgroundJob)
                .where(
                    BackgroundJob.id == job_id,
                    BackgroundJob.status == JobStatus.ACTIVE.value,
                )
                .values(
                    status=JobStatus.COMPLETED.value,
                    result=result,
                    error_message=None,
                    locked_by=None,
                    locked_at=None,
                    lock_expires_at=None,
                    finished_at=now,
                    updated_at=now,
                )
                .execution_options(synchronize_session=False)
            )
            if outcome.rowcount == 0:
                logger.warning(f"⚠️ Job {job_id} was not active when completing")

    async def fail(self, job_id: str, error: str) -> BackgroundJob:
        """
        Record a failed attempt.

        Reschedules the job with backoff while attempts remain, otherwise
        marks it permanently failed. Returns the updated job.
        """
        now = self.clock()
        async with async_managed_session(self.session_factory) as session:
            job = await session.get(BackgroundJob, job_id)
            if job is None:
                raise NotFoundError("Job not found")

            job.error_message = error
            job.locked_by = None
            job.locked_at = None
            job.lock_expires_at = None
            job.updated_at = now

            if job.attempts_made >= job.max_attempts:
                job.status = JobStatus.FAILED.value
                job.finished_at = now
                logger.error(
                    f"❌ Job {job_id} ({job.job_type}) failed permanently after "
                    f"{job.attempts_made} attempt(s): {error}"
                )
            else:
                delay_ms = compute_backoff_ms(
                    BackoffType(job.backoff_type), job.backoff_delay_ms, job.attempts_made
                )
                job.status = JobStatus.WAITING.value
                job.run_at = now + timedelta(milliseconds=delay_ms)
                logger.warning(
                    f"🔄 Job {job_id} ({job.job_type}) attempt {job.attempts_made} of "
                    f"{job.max_attempts} failed, retrying in {delay_ms}ms: {error}"
                )

            await session.flush()
            return job

    async def refresh_locks(self, worker_id: str, job_ids: Collection[str]) -> int:
        """Extend the lease of jobs the worker is still running"""
        if not job_ids:
            return 0

        now = self.clock()
        async with async_managed_session(self.session_factory) as session:
            result = await session.execute(
                update(BackgroundJob)
                .where(
                    BackgroundJob.id.in_(list(job_ids)),
                    BackgroundJob.locked_by == worker_id,
                    BackgroundJob.status == JobStatus.ACTIVE.value,
                )
                .values(lock_expires_at=now + self.lock_timeout, updated_at=now)
                .execution_options(synchronize_session=False)
            )
            return result.rowcount or 0

    async def release_worker_jobs(self, worker_id: str) -> int:
        """
        Hand every active job held by the worker back to the queue.

        The interrupted attempt is not counted against ``max_attempts``.
        """
        now = self.clock()
        async with async_managed_session(self.session_factory) as session:
            result = await session.execute(
                update(BackgroundJob)
                .where(
                    BackgroundJob.locked_by == worker_id,
                    BackgroundJob.status == JobStatus.ACTIVE.value,
                )
                .values(
                    status=JobStatus.WAITING.value,
                    attempts_made=BackgroundJob.attempts_made - 1,
                    locked_by=None,
                    locked_at=None,
                    lock_expires_at=None,
                    run_at=now,
                    updated_at=now,
                )
                .execution_options(synchronize_session=False)
            )
            released = result.rowcount or 0

        if released:
            logger.warning(f"🔓 Released {released} in-flight job(s) held by worker {worker_id}")
        return released

    async def recover_stalled(self, queue_name: Optional[str] = None) -> Dict[str, int]:
        """
        Reclaim active jobs whose lease has expired.

        Jobs with attempts left go back to waiting; jobs whose last attempt
        stalled are marked failed. Returns {'requeued': n, 'failed': m}.
        """
        now = self.clock()
        stalled = [
            BackgroundJob.status == JobStatus.ACTIVE.value,
            BackgroundJob.lock_expires_at <= now,
        ]
        if queue_name is not None:
            stalled.append(BackgroundJob.queue_name == queue_name)

        async with async_managed_session(self.session_factory) as session:
            exhausted = await session.execute(
                update(BackgroundJob)
                .where(*stalled, BackgroundJob.attempts_made >= BackgroundJob.max_attempts)
                .values(
                    status=JobStatus.FAILED.value,
                    error_message="Job lock expired on final attempt",
                    locked_by=None,
                    locked_at=None,
                    lock_expires_at=None,
                    finished_at=now,
                    updated_at=now,
                )
                .execution_options(synchronize_session=False)
            )
            requeued = await session.execute(
                update(BackgroundJob)
                .where(*stalled, BackgroundJob.attempts_made < BackgroundJob.max_attempts)
                .values(
                    status=JobStatus.WAITING.value,
                    error_message="Job lock expired",
                    locked_by=None,
                    locked_at=None,
                    lock_expires_at=None,
                    run_at=now,
                    updated_at=now,
                )
                .execution_options(synchronize_session=False)
            )
            counts = {"requeued": requeued.rowcount or 0, "failed": exhausted.rowcount or 0}

        if counts["requeued"] or counts["failed"]:
            scope = f" on '{queue_name}'" if queue_name else ""
            logger.warning(
                f"🧹 Recovered stalled jobs{scope}: "
                f"{counts['requeued']} requeued, {counts['failed']} failed"
            )
        return counts

    async def status(self, queue_name: str) -> QueueCounts:
        """Counts by status; waiting jobs scheduled in the future count as delayed"""
        now = self.clock()
        counts = QueueCounts(name=queue_name)

        async with async_managed_session(self.session_factory) as session:
            rows = (
                await session.execute(
                    select(BackgroundJob.status, func.count(BackgroundJob.id))
                    .where(BackgroundJob.queue_name == queue_name)
                    .group_by(BackgroundJob.status)
                )
            ).all()

            delayed = (
                await session.execute(
                    select(func.count(BackgroundJob.id)).where(
                        and_(
                            BackgroundJob.queue_name == queue_name,
                            BackgroundJob.status == JobStatus.WAITING.value,
                            BackgroundJob.run_at > now,
                        )
                    )
                )
            ).scalar_one()

        for job_status, count in rows:
            if hasattr(counts, job_status):
                setattr(counts, job_status, count)

        counts.waiting -= delayed
        counts.delayed = delayed
        return counts

    async def overview(self, queue_names: Iterable[str] = ALL_QUEUES) -> Dict[str, QueueCounts]:
        """Counts for several queues at once"""
        return {name: await self.status(name) for name in queue_names}
