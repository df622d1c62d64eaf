"""
Verification Flow Service
OTP confirmation of an email address or phone number

A session is created per start request, delivers its code through the
notifications queue, and is closed by a matching code, by expiry, or by
exhausting its attempt budget. Codes are never logged.
"""

import hmac
import logging
import random
import secrets
import uuid
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Optional

from sqlalchemy import func, insert, literal, select, text, update
from sqlalchemy.ext.asyncio import async_sessionmaker

from config import Config
from database import async_managed_session, get_session_factory
from models import BackgroundJob, VerificationChannel, VerificationSession, VerificationStatus
from services.notification_service import NotificationService
from utils.exceptions import (
    InvalidInputError, InvalidStateError, NotFoundError, RateLimitedError,
)
from utils.helpers import isoformat_utc, normalize_email, normalize_phone, utc_now

logger = logging.getLogger(__name__)

EXPIRE_SESSIONS_JOB = "expire-sessions"

RATE_LIMIT_WINDOW = timedelta(hours=1)

SESSION_INACTIVE_MESSAGE = "Session is no longer active. Start a new verification."
SESSION_EXPIRED_MESSAGE = "Session expired. Start a new verification."
TOO_MANY_ATTEMPTS_MESSAGE = "Too many failed attempts. Start a new verification."
INVALID_CODE_MESSAGE = "Invalid verification code."
MISSING_IDENTIFIER_MESSAGE = (
    "email is required when channel is email, phone is required when channel is phone"
)
RATE_LIMITED_MESSAGE = "Too many verification requests. Try again after some time."


class VerificationFlowService:
    """Start, resend and complete OTP verification sessions"""

    def __init__(
        self,
        notification_service: NotificationService,
        session_factory: Optional[async_sessionmaker] = None,
        clock: Callable[[], datetime] = utc_now,
        code_length: Optional[int] = None,
        ttl_minutes: Optional[int] = None,
        max_starts_per_identifier_per_hour: Optional[int] = None,
        max_resends_per_session: Optional[int] = None,
        max_attempts_per_session: Optional[int] = None,
        secure_rng: Optional[bool] = None,
    ):
        self.notification_service = notification_service
        self.session_factory = session_factory or get_session_factory()
        self.clock = clock

        self.code_length = code_length or Config.VERIFICATION_OTP_LENGTH
        self.ttl_minutes = ttl_minutes or Config.VERIFICATION_OTP_TTL_MINUTES
        self.max_starts_per_identifier_per_hour = (
            max_starts_per_identifier_per_hour
            or Config.VERIFICATION_MAX_STARTS_PER_IDENTIFIER_PER_HOUR
        )
        self.max_resends_per_session = (
            Config.VERIFICATION_MAX_RESENDS_PER_SESSION
            if max_resends_per_session is None else max_resends_per_session
        )
        self.max_attempts_per_session = (
            max_attempts_per_session or Config.VERIFICATION_MAX_ATTEMPTS_PER_SESSION
        )
        self.secure_rng = Config.VERIFICATION_OTP_SECURE_RNG if secure_rng is None else secure_rng

    # ------------------------------------------------------------------
    # Public flow
    # ------------------------------------------------------------------

    async def start(
        self,
        channel: str,
        email: Optional[str] = None,
        phone: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Open a session and send its code.

        Returns: {'session_id', 'channel', 'expires_at', 'message'}
        """
        verification_channel = self._parse_channel(channel)
        identifier = self._get_identifier(verification_channel, email, phone)
        if not identifier:
            raise InvalidInputError(MISSING_IDENTIFIER_MESSAGE)

        now = self.clock()
        since = now - RATE_LIMIT_WINDOW
        code = self._generate_code()
        expires_at = now + timedelta(minutes=self.ttl_minutes)

        session_id = str(uuid.uuid4())
        row = {
            "id": session_id,
            "channel": verification_channel.value,
            "identifier": identifier,
            "code": code,
            "attempts": 0,
            "resend_count": 0,
            "status": VerificationStatus.PENDING.value,
            "expires_at": expires_at,
            "created_at": now,
            "updated_at": now,
        }
        recent_starts = (
            select(func.count(VerificationSession.id))
            .where(
                VerificationSession.identifier == identifier,
                VerificationSession.created_at >= since,
            )
            .correlate(None)
            .scalar_subquery()
        )
        columns = VerificationSession.__table__.c
        # Count and insert in one statement so the window check holds under concurrent starts
        within_limit = select(
            *(literal(value, columns[name].type).label(name) for name, value in row.items())
        ).where(recent_starts < self.max_starts_per_identifier_per_hour)

        async with async_managed_session(self.session_factory) as session:
            await self._lock_identifier(session, identifier)
            result = await session.execute(
                insert(VerificationSession).from_select(list(row), within_limit)
            )
            inserted = result.rowcount

        if inserted == 0:
            logger.warning(
                f"🚫 Rate limit: more than {self.max_starts_per_identifier_per_hour} "
                f"verification starts for identifier in the last hour"
            )
            raise RateLimitedError(RATE_LIMITED_MESSAGE)

        await self._send_code(verification_channel, identifier, code)
        logger.info(f"🔐 Verification session started: {session_id} for {verification_channel.value}")

        return {
            "session_id": session_id,
            "channel": verification_channel.value,
            "expires_at": isoformat_utc(expires_at),
            "message": (
                f"Verification code sent to {verification_channel.value}. "
                f"Code expires in {self.ttl_minutes} minutes."
            ),
        }

    async def resend(self, session_id: str) -> Dict[str, Any]:
        """
        Rotate the code of a pending session and send it again.

        Returns: {'session_id', 'expires_at', 'message'}
        """
        verification = await self._load_active_session(session_id)

        resend_limit_message = (
            f"Maximum resend limit ({self.max_resends_per_session}) reached. "
            f"Request a new code by starting verification again."
        )
        if verification.resend_count >= self.max_resends_per_session:
            raise InvalidStateError(resend_limit_message)

        now = self.clock()
        code = self._generate_code()
        expires_at = now + timedelta(minutes=self.ttl_minutes)

        async with async_managed_session(self.session_factory) as session:
            result = await session.execute(
                update(VerificationSession)
                .where(
                    VerificationSession.id == verification.id,
                    VerificationSession.status == VerificationStatus.PENDING.value,
                    VerificationSession.resend_count < self.max_resends_per_session,
                )
                .values(
                    code=code,
                    resend_count=VerificationSession.resend_count + 1,
                    expires_at=expires_at,
                    updated_at=now,
                )
                .execution_options(synchronize_session=False)
            )
            rotated = result.rowcount
            current_status = None
            if rotated == 0:
                current_status = (
                    await session.execute(
                        select(VerificationSession.status).where(
                            VerificationSession.id == verification.id
                        )
                    )
                ).scalar_one_or_none()

        if rotated == 0:
            # Lost a race: either a concurrent resend used the last slot or the session closed
            if current_status == VerificationStatus.PENDING.value:
                raise InvalidStateError(resend_limit_message)
            raise InvalidStateError(SESSION_INACTIVE_MESSAGE)

        await self._send_code(VerificationChannel(verification.channel), verification.identifier, code)
        logger.info(f"🔄 Verification code resent for session {verification.id}")

        return {
            "session_id": verification.id,
            "expires_at": isoformat_utc(expires_at),
            "message": "New verification code sent.",
        }

    async def complete(self, session_id: str, code: str) -> Dict[str, Any]:
        """
        Check a submitted code.

        Returns: {'session_id', 'verified': True, 'message'}
        """
        verification = await self._load_active_session(session_id)

        if verification.attempts >= self.max_attempts_per_session:
            raise InvalidStateError(TOO_MANY_ATTEMPTS_MESSAGE)

        now = self.clock()
        submitted = str(code or "").strip()

        # Every comparison consumes an attempt first, so concurrent guesses
        # cannot exceed the per-session budget
        async with async_managed_session(self.session_factory) as session:
            result = await session.execute(
                update(VerificationSession)
                .where(
                    VerificationSession.id == verification.id,
                    VerificationSession.status == VerificationStatus.PENDING.value,
                    VerificationSession.attempts < self.max_attempts_per_session,
                )
                .values(attempts=VerificationSession.attempts + 1, updated_at=now)
                .execution_options(synchronize_session=False)
            )
            reserved = result.rowcount
            current_status = None
            if reserved == 0:
                current_status = (
                    await session.execute(
                        select(VerificationSession.status).where(
                            VerificationSession.id == verification.id
                        )
                    )
                ).scalar_one_or_none()

        if reserved == 0:
            if current_status == VerificationStatus.PENDING.value:
                raise InvalidStateError(TOO_MANY_ATTEMPTS_MESSAGE)
            raise InvalidStateError(SESSION_INACTIVE_MESSAGE)

        if not hmac.compare_digest(verification.code.encode(), submitted.encode()):
            logger.warning(
                f"⚠️ Invalid verification code for session {verification.id} "
                f"(limit {self.max_attempts_per_session} attempts)"
            )
            raise InvalidInputError(INVALID_CODE_MESSAGE)

        # A correct code does not count as a failed attempt
        async with async_managed_session(self.session_factory) as session:
            result = await session.execute(
                update(VerificationSession)
                .where(
                    VerificationSession.id == verification.id,
                    VerificationSession.status == VerificationStatus.PENDING.value,
                )
                .values(
                    status=VerificationStatus.COMPLETED.value,
                    attempts=VerificationSession.attempts - 1,
                    updated_at=now,
                )
                .execution_options(synchronize_session=False)
            )
            completed = result.rowcount

        if completed == 0:
            raise InvalidStateError(SESSION_INACTIVE_MESSAGE)

        logger.info(f"✅ Verification completed for session {verification.id}")
        return {
            "session_id": verification.id,
            "verified": True,
            "message": "Verification completed successfully.",
        }

    async def get_session(self, session_id: str) -> VerificationSession:
        async with async_managed_session(self.session_factory) as session:
            verification = await session.get(VerificationSession, session_id)
            if verification is None:
                raise NotFoundError("Verification session not found")
            return verification

    async def expire_stale_sessions(self) -> int:
        """Move pending sessions past their expiry to expired; returns the count"""
        now = self.clock()
        async with async_managed_session(self.session_factory) as session:
            result = await session.execute(
                update(VerificationSession)
                .where(
                    VerificationSession.status == VerificationStatus.PENDING.value,
                    VerificationSession.expires_at < now,
                )
                .values(status=VerificationStatus.EXPIRED.value, updated_at=now)
                .execution_options(synchronize_session=False)
            )
            expired = result.rowcount or 0

        if expired:
            logger.info(f"🧹 Expired {expired} stale verification session(s)")
        return expired

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _load_active_session(self, session_id: str) -> VerificationSession:
        """Session must exist, be pending, and not be past its expiry (lazily expired here)"""
        verification = await self.get_session(session_id)

        if verification.status != VerificationStatus.PENDING.value:
            raise InvalidStateError(SESSION_INACTIVE_MESSAGE)

        now = self.clock()
        if verification.expires_at < now:
            async with async_managed_session(self.session_factory) as session:
                await session.execute(
                    update(VerificationSession)
                    .where(
                        VerificationSession.id == verification.id,
                        VerificationSession.status == VerificationStatus.PENDING.value,
                    )
                    .values(status=VerificationStatus.EXPIRED.value, updated_at=now)
                    .execution_options(synchronize_session=False)
                )
            logger.info(f"⏰ Verification session {verification.id} expired")
            raise InvalidStateError(SESSION_EXPIRED_MESSAGE)

        return verification

    @staticmethod
    async def _lock_identifier(session, identifier: str) -> None:
        """
        Serialize starts for one identifier until the transaction ends.

        PostgreSQL READ COMMITTED lets two INSERT ... SELECT statements miss
        each other's rows, so a transaction-scoped advisory lock is taken.
        SQLite already serializes writers.
        """
        connection = await session.connection()
        if connection.dialect.name == "postgresql":
            await session.execute(
                text("SELECT pg_advisory_xact_lock(hashtext(:identifier))"),
                {"identifier": identifier},
            )

    @staticmethod
    def _parse_channel(channel: Any) -> VerificationChannel:
        if isinstance(channel, VerificationChannel):
            return channel
        try:
            return VerificationChannel(str(channel).strip().lower())
        except ValueError:
            raise InvalidInputError(f"Unsupported verification channel: {channel}") from None

    @staticmethod
    def _get_identifier(
        channel: VerificationChannel,
        email: Optional[str],
        phone: Optional[str],
    ) -> Optional[str]:
        if channel == VerificationChannel.EMAIL and email and email.strip():
            return normalize_email(email)
        if channel == VerificationChannel.PHONE and phone and phone.strip():
            return normalize_phone(phone)
        return None

    def _generate_code(self) -> str:
        low = 10 ** (self.code_length - 1)
        high = 10 ** self.code_length - 1
        if self.secure_rng:
            return str(low + secrets.randbelow(high - low + 1))
        return str(random.randint(low, high))

    async def _send_code(self, channel: VerificationChannel, identifier: str, code: str) -> None:
        message = f"Your verification code is: {code}"
        if channel == VerificationChannel.EMAIL:
            await self.notification_service.send_email(identifier, "Verification Code", message)
        else:
            await self.notification_service.send_sms(identifier, message)


class VerificationJobProcessor:
    """Runs maintenance jobs on the ``verification`` queue"""

    def __init__(self, verification_service: VerificationFlowService):
        self.verification_service = verification_service

    async def process(self, job: BackgroundJob) -> Dict[str, Any]:
        if job.job_type != EXPIRE_SESSIONS_JOB:
            raise ValueError(f"Unknown verification job type: {job.job_type}")

        expired = await self.verification_service.expire_stale_sessions()
        return {"success": True, "expired": expired}
