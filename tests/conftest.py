"""
Shared test fixtures for the Aid Claims service

Each test gets its own on-disk SQLite database (aiosqlite driver) so that
concurrent sessions use separate connections, the same way they would
against PostgreSQL.
"""

import logging
from datetime import datetime, timedelta
from decimal import Decimal

import pytest
import pytest_asyncio

from database import build_engine, build_session_factory, create_tables
from jobs.job_queue import JobQueue
from models import CampaignStatus
from services.audit_trail_service import AuditTrailService
from services.campaign_service import CampaignService
from services.claim_service import ClaimService
from services.metrics_service import MetricsService
from services.notification_service import NotificationService
from services.onchain_adapter import MockOnchainAdapter

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)


class FakeClock:
    """Controllable replacement for utils.helpers.utc_now"""

    def __init__(self, start: datetime = datetime(2026, 1, 15, 12, 0, 0)):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


@pytest_asyncio.fixture
async def engine(tmp_path):
    test_engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'aid_claims_test.db'}")
    assert await create_tables(test_engine)
    yield test_engine
    await test_engine.dispose()


@pytest.fixture
def session_factory(engine):
    return build_session_factory(engine)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def metrics():
    return MetricsService()


@pytest.fixture
def audit_service(session_factory):
    return AuditTrailService(session_factory)


@pytest.fixture
def job_queue(session_factory):
    return JobQueue(session_factory)


@pytest.fixture
def notification_service(job_queue):
    return NotificationService(job_queue)


@pytest.fixture
def campaign_service(session_factory):
    return CampaignService(session_factory)


@pytest_asyncio.fixture
async def campaign(campaign_service):
    """Active campaign with the well-known id ``campaign-1``"""
    return await campaign_service.create(
        name="Winter Relief 2026",
        budget=Decimal("25000.50"),
        status=CampaignStatus.ACTIVE,
        metadata={"region": "Lagos"},
        campaign_id="campaign-1",
    )


@pytest.fixture
def mock_adapter():
    return MockOnchainAdapter()


@pytest.fixture
def claim_service(session_factory, mock_adapter, audit_service, metrics):
    return ClaimService(
        session_factory=session_factory,
        onchain_adapter=mock_adapter,
        audit_service=audit_service,
        metrics_service=metrics,
        onchain_enabled=True,
        adapter_name="mock",
        adapter_timeout=5.0,
    )


@pytest.fixture
def make_claim_service(session_factory, audit_service, metrics):
    """Factory for claim services with a custom adapter or on-chain setting"""

    def _make(adapter=None, onchain_enabled=True, adapter_timeout=5.0):
        return ClaimService(
            session_factory=session_factory,
            onchain_adapter=adapter,
            audit_service=audit_service,
            metrics_service=metrics,
            onchain_enabled=onchain_enabled,
            adapter_name="mock",
            adapter_timeout=adapter_timeout,
        )

    return _make


@pytest_asyncio.fixture
async def approved_claim(claim_service, campaign):
    claim = await claim_service.create(campaign.id, "100.50", "recipient-wallet-1")
    await claim_service.verify(claim.id)
    return await claim_service.approve(claim.id)
