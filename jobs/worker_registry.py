"""
Worker Registry
Explicit per-queue worker wiring, done once at startup
"""

import logging
from typing import Dict, Iterable, Optional

from config import Config
from jobs.job_queue import JobQueue, NOTIFICATIONS_QUEUE, ONCHAIN_QUEUE, VERIFICATION_QUEUE
from jobs.queue_worker import QueueWorker
from services.metrics_service import MetricsService
from services.notification_service import NotificationProcessor
from services.onchain_adapter import OnchainAdapter
from services.onchain_service import OnchainJobProcessor
from services.verification_flow_service import VerificationFlowService, VerificationJobProcessor

logger = logging.getLogger(__name__)


def build_workers(
    job_queue: JobQueue,
    onchain_adapter: OnchainAdapter,
    verification_service: VerificationFlowService,
    metrics: Optional[MetricsService] = None,
    notification_processor: Optional[NotificationProcessor] = None,
    concurrency: Optional[int] = None,
    onchain_concurrency: Optional[int] = None,
    poll_interval: Optional[float] = None,
) -> Dict[str, QueueWorker]:
    """
    One worker pool per queue.

    onchain runs one job at a time so chain-affecting operations are
    serialised; notifications and verification share the general concurrency.
    """
    general = concurrency or Config.QUEUE_CONCURRENCY
    onchain = onchain_concurrency or Config.ONCHAIN_QUEUE_CONCURRENCY

    workers = {
        VERIFICATION_QUEUE: QueueWorker(
            job_queue, VERIFICATION_QUEUE, VerificationJobProcessor(verification_service),
            concurrency=general, poll_interval=poll_interval, metrics=metrics,
        ),
        NOTIFICATIONS_QUEUE: QueueWorker(
            job_queue, NOTIFICATIONS_QUEUE, notification_processor or NotificationProcessor(),
            concurrency=general, poll_interval=poll_interval, metrics=metrics,
        ),
        ONCHAIN_QUEUE: QueueWorker(
            job_queue, ONCHAIN_QUEUE, OnchainJobProcessor(onchain_adapter, metrics),
            concurrency=onchain, poll_interval=poll_interval, metrics=metrics,
        ),
    }

    logger.info(
        "🧰 Registered workers: "
        + ", ".join(f"{name}={worker.concurrency}" for name, worker in workers.items())
    )
    return workers


async def start_workers(workers: Dict[str, QueueWorker]) -> None:
    for worker in workers.values():
        await worker.start()


async def stop_workers(workers: Dict[str, QueueWorker], names: Optional[Iterable[str]] = None) -> None:
    for name in (names or list(workers)):
        worker = workers.get(name)
        if worker is not None:
            await worker.stop()
