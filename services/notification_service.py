"""
Notification Service
Email and SMS delivery through the ``notifications`` queue

Delivery itself is mocked: the processor accepts every job and returns a
synthetic message id. Message bodies may carry one-time codes and are never
written to the log.
"""

import asyncio
import logging
import uuid
from enum import Enum
from typing import Any, Dict, Optional

from jobs.job_queue import JobHandle, JobOptions, JobQueue, NOTIFICATIONS_QUEUE
from models import BackgroundJob, BackoffType
from utils.helpers import utc_now

logger = logging.getLogger(__name__)

SEND_EMAIL_JOB = "send-email"
SEND_SMS_JOB = "send-sms"

NOTIFICATION_JOB_OPTIONS = JobOptions(
    attempts=3,
    backoff_type=BackoffType.EXPONENTIAL,
    backoff_delay_ms=5000,
)


class NotificationType(Enum):
    EMAIL = "email"
    SMS = "sms"


class NotificationService:
    """Enqueues email and SMS notifications"""

    def __init__(self, job_queue: JobQueue):
        self.job_queue = job_queue

    async def send_email(self, recipient: str, subject: str, message: str) -> JobHandle:
        payload = self._payload(NotificationType.EMAIL, recipient, message, subject=subject)
        handle = await self.job_queue.enqueue(
            NOTIFICATIONS_QUEUE, SEND_EMAIL_JOB, payload, NOTIFICATION_JOB_OPTIONS
        )
        logger.info(f"📧 Enqueued email job: {handle.id} for {recipient}")
        return handle

    async def send_sms(self, recipient: str, message: str) -> JobHandle:
        payload = self._payload(NotificationType.SMS, recipient, message)
        handle = await self.job_queue.enqueue(
            NOTIFICATIONS_QUEUE, SEND_SMS_JOB, payload, NOTIFICATION_JOB_OPTIONS
        )
        logger.info(f"📱 Enqueued SMS job: {handle.id} for {recipient}")
        return handle

    @staticmethod
    def _payload(
        notification_type: NotificationType,
        recipient: str,
        message: str,
        subject: Optional[str] = None,
    ) -> Dict[str, Any]:
        payload = {
            "type": notification_type.value,
            "recipient": recipient,
            "message": message,
            "timestamp": int(utc_now().timestamp() * 1000),
        }
        if subject is not None:
            payload["subject"] = subject
        return payload


class NotificationProcessor:
    """Mock delivery of queued notifications"""

    def __init__(self, delivery_delay_seconds: float = 0.1):
        self.delivery_delay_seconds = delivery_delay_seconds

    async def process(self, job: BackgroundJob) -> Dict[str, Any]:
        payload = job.payload or {}
        channel = payload.get("type")
        recipient = payload.get("recipient")

        if channel not in (NotificationType.EMAIL.value, NotificationType.SMS.value):
            raise ValueError(f"Unknown notification type: {channel}")
        if not recipient:
            raise ValueError("Notification recipient is required")

        logger.info(
            f"📤 Processing {channel} notification for {recipient} "
            f"(attempt {job.attempts_made} of {job.max_attempts})"
        )

        # Provider integration point (SMTP, SMS gateway)
        if self.delivery_delay_seconds > 0:
            await asyncio.sleep(self.delivery_delay_seconds)

        message_id = f"mock-msg-{uuid.uuid4().hex[:12]}"
        logger.info(f"✅ Notification job {job.id} for {recipient} delivered as {message_id}")
        return {"success": True, "message_id": message_id}
