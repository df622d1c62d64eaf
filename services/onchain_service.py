"""
On-chain Job Service
Queues escrow operations on the ``onchain`` queue and executes them through the adapter
"""

import logging
import time
from dataclasses import asdict
from typing import Any, Dict, Optional

from jobs.job_queue import JobHandle, JobOptions, JobQueue, ONCHAIN_QUEUE
from models import BackgroundJob, BackoffType
from services.metrics_service import MetricsService
from services.onchain_adapter import (
    CreateClaimParams, DisburseParams, InitEscrowParams, OnchainAdapter, OnchainStatus,
)
from utils.exceptions import OnchainOperationError
from utils.helpers import utc_now

logger = logging.getLogger(__name__)

INIT_ESCROW_JOB = "init-escrow"
CREATE_CLAIM_JOB = "create-claim"
DISBURSE_JOB = "disburse"

# Chain-affecting jobs are retried patiently
ONCHAIN_JOB_OPTIONS = JobOptions(
    attempts=5,
    backoff_type=BackoffType.EXPONENTIAL,
    backoff_delay_ms=10000,
)


class OnchainService:
    """Producer side of the onchain queue"""

    def __init__(self, job_queue: JobQueue):
        self.job_queue = job_queue

    async def enqueue_init_escrow(self, params: InitEscrowParams) -> JobHandle:
        return await self._enqueue(INIT_ESCROW_JOB, asdict(params))

    async def enqueue_create_claim(self, params: CreateClaimParams) -> JobHandle:
        return await self._enqueue(CREATE_CLAIM_JOB, asdict(params))

    async def enqueue_disburse(self, params: DisburseParams) -> JobHandle:
        return await self._enqueue(DISBURSE_JOB, asdict(params))

    async def _enqueue(self, job_type: str, params: Dict[str, Any]) -> JobHandle:
        payload = {
            "type": job_type,
            "params": params,
            "timestamp": int(utc_now().timestamp() * 1000),
        }
        handle = await self.job_queue.enqueue(ONCHAIN_QUEUE, job_type, payload, ONCHAIN_JOB_OPTIONS)
        logger.info(f"🔗 Enqueued onchain job: {handle.id} for {job_type}")
        return handle


class OnchainJobProcessor:
    """Consumer side: runs one onchain job through the adapter"""

    def __init__(self, adapter: OnchainAdapter, metrics: Optional[MetricsService] = None):
        self.adapter = adapter
        self.metrics = metrics

    async def process(self, job: BackgroundJob) -> Dict[str, Any]:
        payload = job.payload or {}
        params = payload.get("params") or {}
        operation = payload.get("type") or job.job_type

        logger.info(
            f"🔄 Processing onchain {operation} job {job.id} "
            f"(attempt {job.attempts_made} of {job.max_attempts})"
        )

        start = time.perf_counter()
        try:
            if operation == INIT_ESCROW_JOB:
                result = await self.adapter.init_escrow(InitEscrowParams(**params))
            elif operation == CREATE_CLAIM_JOB:
                result = await self.adapter.create_claim(CreateClaimParams(**params))
            elif operation == DISBURSE_JOB:
                result = await self.adapter.disburse(DisburseParams(**params))
            else:
                raise ValueError(f"Unknown onchain operation type: {operation}")

            if result.status == OnchainStatus.FAILED:
                raise OnchainOperationError(operation)

        except Exception as e:
            self._record(operation, "failed", start)
            logger.error(f"❌ Onchain job {job.id} failed: {e}")
            raise

        self._record(operation, "success", start)
        logger.info(f"✅ Onchain job {job.id} completed: {result.transaction_hash}")
        return {
            "success": True,
            "transaction_hash": result.transaction_hash,
            "metadata": result.metadata,
        }

    def _record(self, operation: str, outcome: str, start: float) -> None:
        if self.metrics is None:
            return
        try:
            self.metrics.increment_onchain_operation(operation, self.adapter.name, outcome)
            self.metrics.record_onchain_duration(operation, self.adapter.name, time.perf_counter() - start)
        except Exception as e:
            logger.warning(f"⚠️ Failed to record onchain metrics: {e}")
