"""
Verification Flow Service Tests
OTP start / resend / complete, rate limiting, expiry and attempt limits
"""

import asyncio

import pytest
import pytest_asyncio
from sqlalchemy import select

from database import async_managed_session
from jobs.job_queue import NOTIFICATIONS_QUEUE, VERIFICATION_QUEUE
from jobs.queue_worker import QueueWorker
from models import BackgroundJob, VerificationStatus
from services.verification_flow_service import (
    EXPIRE_SESSIONS_JOB, VerificationFlowService, VerificationJobProcessor,
)
from utils.exceptions import (
    InvalidInputError, InvalidStateError, NotFoundError, RateLimitedError,
)


@pytest.fixture
def flow(notification_service, session_factory, clock):
    return VerificationFlowService(
        notification_service,
        session_factory=session_factory,
        clock=clock,
        code_length=6,
        ttl_minutes=10,
        max_starts_per_identifier_per_hour=5,
        max_resends_per_session=3,
        max_attempts_per_session=5,
        secure_rng=True,
    )


@pytest_asyncio.fixture
async def started(flow):
    return await flow.start("email", email="  Amina@Example.ORG ")


async def _notification_jobs(session_factory):
    async with async_managed_session(session_factory) as session:
        result = await session.execute(
            select(BackgroundJob)
            .where(BackgroundJob.queue_name == NOTIFICATIONS_QUEUE)
            .order_by(BackgroundJob.created_at.asc())
        )
        return list(result.scalars().all())


class TestStart:

    @pytest.mark.asyncio
    async def test_start_creates_pending_session_and_sends_email(self, flow, started, session_factory, clock):
        assert started["channel"] == "email"
        assert started["message"] == "Verification code sent to email. Code expires in 10 minutes."
        assert started["expires_at"].endswith("Z")

        session = await flow.get_session(started["session_id"])
        assert session.status == VerificationStatus.PENDING.value
        assert session.identifier == "amina@example.org"
        assert len(session.code) == 6 and session.code.isdigit()
        assert session.code[0] != "0"
        assert session.attempts == 0
        assert session.resend_count == 0

        jobs = await _notification_jobs(session_factory)
        assert len(jobs) == 1
        assert jobs[0].job_type == "send-email"
        assert jobs[0].max_attempts == 3
        assert jobs[0].payload["recipient"] == "amina@example.org"
        assert jobs[0].payload["subject"] == "Verification Code"
        assert session.code in jobs[0].payload["message"]

    @pytest.mark.asyncio
    async def test_phone_channel_sends_sms(self, flow, session_factory):
        result = await flow.start("phone", phone=" +2348000000001 ")
        session = await flow.get_session(result["session_id"])
        assert session.identifier == "+2348000000001"

        jobs = await _notification_jobs(session_factory)
        assert [job.job_type for job in jobs] == ["send-sms"]

    @pytest.mark.asyncio
    @pytest.mark.parametrize("channel,kwargs", [
        ("email", {}),
        ("email", {"phone": "+2348000000001"}),
        ("phone", {"email": "a@b.org"}),
        ("email", {"email": "   "}),
    ])
    async def test_missing_identifier(self, flow, channel, kwargs):
        with pytest.raises(InvalidInputError) as exc_info:
            await flow.start(channel, **kwargs)
        assert exc_info.value.message == (
            "email is required when channel is email, phone is required when channel is phone"
        )

    @pytest.mark.asyncio
    async def test_unknown_channel(self, flow):
        with pytest.raises(InvalidInputError):
            await flow.start("pigeon", email="a@b.org")

    @pytest.mark.asyncio
    async def test_rate_limit_window(self, flow, clock):
        for _ in range(5):
            await flow.start("email", email="rate@example.org")
            clock.advance(minutes=1)

        with pytest.raises(RateLimitedError) as exc_info:
            await flow.start("email", email="RATE@example.org")
        assert exc_info.value.http_status == 429
        assert exc_info.value.message == "Too many verification requests. Try again after some time."

        # Other identifiers are unaffected
        await flow.start("email", email="other@example.org")

        clock.advance(minutes=61)
        result = await flow.start("email", email="rate@example.org")
        assert result["session_id"]


class TestResend:

    @pytest.mark.asyncio
    async def test_resend_rotates_code(self, flow, started, session_factory, clock):
        before = await flow.get_session(started["session_id"])
        clock.advance(minutes=2)

        result = await flow.resend(started["session_id"])
        assert result["message"] == "New verification code sent."

        after = await flow.get_session(started["session_id"])
        assert after.resend_count == 1
        assert after.expires_at > before.expires_at
        assert len(await _notification_jobs(session_factory)) == 2

    @pytest.mark.asyncio
    async def test_resend_limit(self, flow, started):
        for _ in range(3):
            await flow.resend(started["session_id"])

        with pytest.raises(InvalidStateError) as exc_info:
            await flow.resend(started["session_id"])
        assert exc_info.value.message.startswith("Maximum resend limit (3) reached.")

    @pytest.mark.asyncio
    async def test_resend_on_expired_session(self, flow, started, clock):
        clock.advance(minutes=11)

        with pytest.raises(InvalidStateError) as exc_info:
            await flow.resend(started["session_id"])
        assert exc_info.value.message == "Session expired. Start a new verification."

        session = await flow.get_session(started["session_id"])
        assert session.status == VerificationStatus.EXPIRED.value

        with pytest.raises(InvalidStateError) as exc_info:
            await flow.resend(started["session_id"])
        assert exc_info.value.message == "Session is no longer active. Start a new verification."

    @pytest.mark.asyncio
    async def test_resend_unknown_session(self, flow):
        with pytest.raises(NotFoundError):
            await flow.resend("missing")


class TestComplete:

    @pytest.mark.asyncio
    async def test_correct_code_completes(self, flow, started):
        session = await flow.get_session(started["session_id"])

        result = await flow.complete(started["session_id"], session.code)
        assert result == {
            "session_id": started["session_id"],
            "verified": True,
            "message": "Verification completed successfully.",
        }
        assert (await flow.get_session(started["session_id"])).status == VerificationStatus.COMPLETED.value

        with pytest.raises(InvalidStateError) as exc_info:
            await flow.complete(started["session_id"], session.code)
        assert exc_info.value.message == "Session is no longer active. Start a new verification."

    @pytest.mark.asyncio
    async def test_wrong_codes_exhaust_attempts(self, flow, started):
        session = await flow.get_session(started["session_id"])
        wrong = "000000"

        for expected_attempts in range(1, 6):
            with pytest.raises(InvalidInputError) as exc_info:
                await flow.complete(started["session_id"], wrong)
            assert exc_info.value.message == "Invalid verification code."
            assert (await flow.get_session(started["session_id"])).attempts == expected_attempts

        with pytest.raises(InvalidStateError) as exc_info:
            await flow.complete(started["session_id"], session.code)
        assert exc_info.value.message == "Too many failed attempts. Start a new verification."

    @pytest.mark.asyncio
    async def test_complete_after_expiry(self, flow, started, clock):
        session = await flow.get_session(started["session_id"])
        clock.advance(minutes=10, seconds=1)

        with pytest.raises(InvalidStateError) as exc_info:
            await flow.complete(started["session_id"], session.code)
        assert exc_info.value.message == "Session expired. Start a new verification."

    @pytest.mark.asyncio
    async def test_code_from_resend_replaces_old_code(self, flow, started):
        old_code = (await flow.get_session(started["session_id"])).code
        await flow.resend(started["session_id"])
        new_code = (await flow.get_session(started["session_id"])).code

        if old_code != new_code:
            with pytest.raises(InvalidInputError):
                await flow.complete(started["session_id"], old_code)
        result = await flow.complete(started["session_id"], new_code)
        assert result["verified"] is True


class TestCodeGeneration:

    @pytest.mark.parametrize("secure", [True, False])
    def test_codes_stay_in_range(self, notification_service, session_factory, secure):
        flow = VerificationFlowService(
            notification_service, session_factory=session_factory, code_length=4, secure_rng=secure
        )
        codes = {flow._generate_code() for _ in range(500)}
        assert all(1000 <= int(code) <= 9999 for code in codes)
        assert all(len(code) == 4 for code in codes)


class TestExpirySweep:

    @pytest.mark.asyncio
    async def test_sweep_expires_only_stale_sessions(self, flow, clock):
        stale = await flow.start("email", email="stale@example.org")
        clock.advance(minutes=8)
        fresh = await flow.start("email", email="fresh@example.org")
        clock.advance(minutes=3)

        assert await flow.expire_stale_sessions() == 1
        assert (await flow.get_session(stale["session_id"])).status == VerificationStatus.EXPIRED.value
        assert (await flow.get_session(fresh["session_id"])).status == VerificationStatus.PENDING.value

    @pytest.mark.asyncio
    async def test_sweep_runs_as_verification_job(self, flow, job_queue, clock):
        started = await flow.start("email", email="job@example.org")
        clock.advance(minutes=30)
        await job_queue.enqueue(VERIFICATION_QUEUE, EXPIRE_SESSIONS_JOB, {})

        worker = QueueWorker(job_queue, VERIFICATION_QUEUE, VerificationJobProcessor(flow))
        results = await worker.run_once()

        assert results[0].success
        assert results[0].result == {"success": True, "expired": 1}
        assert (await flow.get_session(started["session_id"])).status == VerificationStatus.EXPIRED.value


class TestConcurrentRequests:
    """Limits hold when requests for the same session or identifier race"""

    @pytest.fixture
    def strict_flow(self, notification_service, session_factory, clock):
        return VerificationFlowService(
            notification_service,
            session_factory=session_factory,
            clock=clock,
            code_length=6,
            max_starts_per_identifier_per_hour=3,
            max_resends_per_session=1,
            max_attempts_per_session=2,
        )

    @pytest.mark.asyncio
    async def test_concurrent_wrong_codes_cannot_exceed_attempt_limit(self, strict_flow):
        started = await strict_flow.start("email", email="race@example.org")
        session = await strict_flow.get_session(started["session_id"])
        wrong = "000000"

        results = await asyncio.gather(
            *(strict_flow.complete(started["session_id"], wrong) for _ in range(8)),
            return_exceptions=True,
        )

        rejected = [r for r in results if isinstance(r, InvalidInputError)]
        locked_out = [r for r in results if isinstance(r, InvalidStateError)]
        assert len(rejected) == 2
        assert len(locked_out) == 6
        assert all(r.message == "Too many failed attempts. Start a new verification." for r in locked_out)
        assert (await strict_flow.get_session(started["session_id"])).attempts == 2

        with pytest.raises(InvalidStateError) as exc_info:
            await strict_flow.complete(started["session_id"], session.code)
        assert exc_info.value.message == "Too many failed attempts. Start a new verification."

    @pytest.mark.asyncio
    async def test_concurrent_guesses_with_correct_code_are_bounded(self, strict_flow):
        started = await strict_flow.start("email", email="guess@example.org")
        session = await strict_flow.get_session(started["session_id"])
        wrong = "000000"

        attempts = [strict_flow.complete(started["session_id"], wrong) for _ in range(8)]
        attempts.append(strict_flow.complete(started["session_id"], session.code))
        results = await asyncio.gather(*attempts, return_exceptions=True)

        verified = [r for r in results if isinstance(r, dict)]
        rejected = [r for r in results if isinstance(r, InvalidInputError)]
        unexpected = [
            r for r in results
            if isinstance(r, Exception) and not isinstance(r, (InvalidInputError, InvalidStateError))
        ]
        # Only two codes are ever compared, whichever requests get there first
        assert len(verified) + len(rejected) <= 2
        assert unexpected == []

        final = await strict_flow.get_session(started["session_id"])
        assert final.attempts == len(rejected)
        assert final.attempts <= 2
        if verified:
            assert final.status == VerificationStatus.COMPLETED.value

    @pytest.mark.asyncio
    async def test_concurrent_resends_respect_limit(self, strict_flow, session_factory):
        started = await strict_flow.start("phone", phone="+2348000000009")

        results = await asyncio.gather(
            *(strict_flow.resend(started["session_id"]) for _ in range(4)),
            return_exceptions=True,
        )

        sent = [r for r in results if isinstance(r, dict)]
        refused = [r for r in results if isinstance(r, InvalidStateError)]
        assert len(sent) == 1
        assert len(refused) == 3
        assert all(r.message.startswith("Maximum resend limit (1) reached.") for r in refused)

        assert (await strict_flow.get_session(started["session_id"])).resend_count == 1
        assert len(await _notification_jobs(session_factory)) == 2

    @pytest.mark.asyncio
    async def test_concurrent_starts_respect_rate_limit(self, strict_flow):
        results = await asyncio.gather(
            *(strict_flow.start("email", email="burst@example.org") for _ in range(6)),
            return_exceptions=True,
        )

        started = [r for r in results if isinstance(r, dict)]
        limited = [r for r in results if isinstance(r, RateLimitedError)]
        assert len(started) == 3
        assert len(limited) == 3
