"""
Campaign Service Tests
"""

from decimal import Decimal

import pytest

from models import CampaignStatus
from utils.exceptions import InvalidInputError, NotFoundError


class TestCampaignService:

    @pytest.mark.asyncio
    async def test_seeded_campaign(self, campaign_service, campaign):
        found = await campaign_service.find_one("campaign-1")
        assert found.name == "Winter Relief 2026"
        assert found.budget == Decimal("25000.50")
        assert found.status == CampaignStatus.ACTIVE.value
        assert found.extra_data == {"region": "Lagos"}

    @pytest.mark.asyncio
    async def test_create_defaults_to_draft(self, campaign_service):
        created = await campaign_service.create(name="Flood Response", budget=1000)
        assert created.status == CampaignStatus.DRAFT.value
        assert created.id

    @pytest.mark.asyncio
    @pytest.mark.parametrize("kwargs", [
        {"name": "", "budget": 10},
        {"name": "X", "budget": -1},
        {"name": "X", "budget": "1.001"},
        {"name": "X", "budget": "1000000000000.00"},
        {"name": "X", "budget": 10, "status": "paused"},
        {"name": "X", "budget": 10, "metadata": ["not", "a", "dict"]},
    ])
    async def test_create_validation(self, campaign_service, kwargs):
        with pytest.raises(InvalidInputError):
            await campaign_service.create(**kwargs)

    @pytest.mark.asyncio
    async def test_update_fields(self, campaign_service, campaign):
        updated = await campaign_service.update(
            campaign.id, name="Winter Relief 2026 - Extended", budget="30000", metadata={"partner": "NGO-B"}
        )
        assert updated.name == "Winter Relief 2026 - Extended"
        assert updated.budget == Decimal("30000")
        assert updated.extra_data == {"partner": "NGO-B"}

    @pytest.mark.asyncio
    async def test_update_rejects_unknown_fields(self, campaign_service, campaign):
        with pytest.raises(InvalidInputError):
            await campaign_service.update(campaign.id, owner="someone")

    @pytest.mark.asyncio
    async def test_update_missing_campaign(self, campaign_service):
        with pytest.raises(NotFoundError):
            await campaign_service.update("missing", name="X")

    @pytest.mark.asyncio
    async def test_archive_is_idempotent_and_hidden_from_listing(self, campaign_service, campaign):
        archived = await campaign_service.archive(campaign.id)
        assert archived.status == CampaignStatus.ARCHIVED.value
        first_archived_at = archived.archived_at
        assert first_archived_at is not None

        again = await campaign_service.archive(campaign.id)
        assert again.archived_at == first_archived_at

        assert await campaign_service.find_all() == []
        assert [c.id for c in await campaign_service.find_all(include_archived=True)] == [campaign.id]

    @pytest.mark.asyncio
    async def test_archive_missing_campaign(self, campaign_service):
        with pytest.raises(NotFoundError):
            await campaign_service.archive("missing")
