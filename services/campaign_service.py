"""
Campaign Service
Create, list, update and archive the funding pools that claims draw against
"""

import logging
from decimal import Decimal
from typing import Any, Dict, List, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import async_sessionmaker

from database import async_managed_session, get_session_factory
from models import Campaign, CampaignStatus
from utils.exceptions import InvalidInputError, NotFoundError
from utils.helpers import parse_money, utc_now

logger = logging.getLogger(__name__)

UPDATABLE_FIELDS = ("name", "budget", "status", "metadata")


class CampaignService:
    def __init__(self, session_factory: Optional[async_sessionmaker] = None):
        self.session_factory = session_factory or get_session_factory()

    async def create(
        self,
        name: str,
        budget: Any,
        status: Any = CampaignStatus.DRAFT,
        metadata: Optional[Dict[str, Any]] = None,
        campaign_id: Optional[str] = None,
    ) -> Campaign:
        campaign = Campaign(
            name=self._validate_name(name),
            budget=self._validate_budget(budget),
            status=self._validate_status(status).value,
            extra_data=self._validate_metadata(metadata),
        )
        if campaign_id:
            campaign.id = campaign_id

        async with async_managed_session(self.session_factory) as session:
            session.add(campaign)
            await session.flush()

        logger.info(f"📣 Campaign created: {campaign.id} ({campaign.name})")
        return campaign

    async def find_all(self, include_archived: bool = False) -> List[Campaign]:
        query = select(Campaign).order_by(Campaign.created_at.asc())
        if not include_archived:
            query = query.where(Campaign.status != CampaignStatus.ARCHIVED.value)

        async with async_managed_session(self.session_factory) as session:
            return list((await session.execute(query)).scalars().all())

    async def find_one(self, campaign_id: str) -> Campaign:
        async with async_managed_session(self.session_factory) as session:
            campaign = await session.get(Campaign, campaign_id)
            if campaign is None:
                raise NotFoundError("Campaign not found")
            return campaign

    async def update(self, campaign_id: str, **fields: Any) -> Campaign:
        """Partial update of name, budget, status and metadata"""
        unknown = set(fields) - set(UPDATABLE_FIELDS)
        if unknown:
            raise InvalidInputError(f"Unsupported campaign fields: {', '.join(sorted(unknown))}")

        # Validate before touching the store
        changes: Dict[str, Any] = {}
        if "name" in fields:
            changes["name"] = self._validate_name(fields["name"])
        if "budget" in fields:
            changes["budget"] = self._validate_budget(fields["budget"])
        if "status" in fields:
            changes["status"] = self._validate_status(fields["status"]).value
        if "metadata" in fields:
            changes["extra_data"] = self._validate_metadata(fields["metadata"])

        async with async_managed_session(self.session_factory) as session:
            campaign = await session.get(Campaign, campaign_id)
            if campaign is not None:
                for attribute, value in changes.items():
                    setattr(campaign, attribute, value)
                if changes.get("status") == CampaignStatus.ARCHIVED.value and campaign.archived_at is None:
                    campaign.archived_at = utc_now()
                campaign.updated_at = utc_now()

        if campaign is None:
            raise NotFoundError("Campaign not found")

        logger.info(f"📝 Campaign updated: {campaign_id} ({', '.join(changes) or 'no changes'})")
        return campaign

    async def archive(self, campaign_id: str) -> Campaign:
        """Archive a campaign; archiving twice keeps the first archived_at"""
        async with async_managed_session(self.session_factory) as session:
            campaign = await session.get(Campaign, campaign_id)
            if campaign is not None and campaign.status != CampaignStatus.ARCHIVED.value:
                now = utc_now()
                campaign.status = CampaignStatus.ARCHIVED.value
                campaign.archived_at = now
                campaign.updated_at = now

        if campaign is None:
            raise NotFoundError("Campaign not found")

        logger.info(f"📦 Campaign archived: {campaign_id}")
        return campaign

    @staticmethod
    def _validate_name(name: Any) -> str:
        if not isinstance(name, str) or not name.strip():
            raise InvalidInputError("Campaign name is required")
        return name.strip()

    @staticmethod
    def _validate_budget(budget: Any) -> Decimal:
        amount = parse_money(budget)
        if amount is None:
            raise InvalidInputError("Budget must be a non-negative number below 1000000000000 with at most 2 decimal places")
        return amount

    @staticmethod
    def _validate_status(status: Any) -> CampaignStatus:
        if isinstance(status, CampaignStatus):
            return status
        try:
            return CampaignStatus(str(status))
        except ValueError:
            raise InvalidInputError(f"Invalid campaign status: {status}") from None

    @staticmethod
    def _validate_metadata(metadata: Any) -> Optional[Dict[str, Any]]:
        if metadata is None:
            return None
        if not isinstance(metadata, dict):
            raise InvalidInputError("Campaign metadata must be an object")
        return metadata
