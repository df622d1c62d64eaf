"""
Claim Lifecycle Service
=======================

Guarded claim transitions and disbursement orchestration.

Every transition is a compare-and-swap on the claim row
(``UPDATE claims SET status = :to WHERE id = :id AND status = :from``), so two
concurrent callers can never both move the same claim. Disbursement calls the
on-chain adapter first; an adapter failure is recorded in metrics and the
audit trail but never blocks the business transition.
"""

import asyncio
import logging
import time
from typing import Any, Dict, List, Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import async_sessionmaker

from config import Config
from database import async_managed_session, get_session_factory
from models import Campaign, Claim, ClaimStatus
from services.audit_trail_service import AuditTrailService, SYSTEM_ACTOR
from services.metrics_service import MetricsService
from services.onchain_adapter import (
    DisburseParams, DisburseResult, OnchainAdapter, OnchainStatus, derive_package_id,
)
from utils.claim_state_validator import ClaimStateValidator
from utils.exceptions import (
    InvalidInputError, InvalidTransitionError, NotFoundError, OnchainOperationError,
)
from utils.helpers import compact_metadata, parse_money, utc_now

logger = logging.getLogger(__name__)

DISBURSE_OPERATION = "disburse"


class ClaimService:
    """Claim creation, lookup and lifecycle transitions"""

    def __init__(
        self,
        session_factory: Optional[async_sessionmaker] = None,
        onchain_adapter: Optional[OnchainAdapter] = None,
        audit_service: Optional[AuditTrailService] = None,
        metrics_service: Optional[MetricsService] = None,
        onchain_enabled: Optional[bool] = None,
        adapter_name: Optional[str] = None,
        adapter_timeout: Optional[float] = None,
    ):
        self.session_factory = session_factory or get_session_factory()
        self.onchain_adapter = onchain_adapter
        self.audit_service = audit_service or AuditTrailService(self.session_factory)
        self.metrics_service = metrics_service or MetricsService()

        self.onchain_enabled = Config.ONCHAIN_ENABLED if onchain_enabled is None else onchain_enabled
        self.adapter_name = (adapter_name or Config.ONCHAIN_ADAPTER or "mock").lower()
        self.adapter_timeout = (
            Config.ONCHAIN_ADAPTER_TIMEOUT_SECONDS if adapter_timeout is None else adapter_timeout
        )

    # ------------------------------------------------------------------
    # Creation and lookup
    # ------------------------------------------------------------------

    async def create(
        self,
        campaign_id: str,
        amount: Any,
        recipient_ref: str,
        evidence_ref: Optional[str] = None,
    ) -> Claim:
        parsed_amount = parse_money(amount)
        if parsed_amount is None:
            raise InvalidInputError("Amount must be a non-negative number below 1000000000000 with at most 2 decimal places")
        if not isinstance(recipient_ref, str) or not recipient_ref.strip():
            raise InvalidInputError("recipient_ref is required")

        async with async_managed_session(self.session_factory) as session:
            campaign = await session.get(Campaign, campaign_id)
            claim_id = None
            if campaign is not None:
                claim = Claim(
                    campaign_id=campaign_id,
                    amount=parsed_amount,
                    status=ClaimStatus.REQUESTED.value,
                    recipient_ref=recipient_ref.strip(),
                    evidence_ref=evidence_ref,
                )
                session.add(claim)
                await session.flush()
                claim_id = claim.id

        if claim_id is None:
            raise NotFoundError("Campaign not found")

        logger.info(f"🆕 Claim {claim_id} created on campaign {campaign_id} for {parsed_amount}")
        await self.audit_service.record(
            SYSTEM_ACTOR, "claim", claim_id, "created", {"status": ClaimStatus.REQUESTED.value}
        )
        return await self.find_one(claim_id)

    async def find_all(self) -> List[Claim]:
        async with async_managed_session(self.session_factory) as session:
            result = await session.execute(
                select(Claim).order_by(Claim.created_at.asc(), Claim.id.asc())
            )
            return list(result.scalars().all())

    async def find_one(self, claim_id: str) -> Claim:
        async with async_managed_session(self.session_factory) as session:
            claim = await session.get(Claim, claim_id)
            if claim is None:
                raise NotFoundError("Claim not found")
            return claim

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def verify(self, claim_id: str) -> Claim:
        return await self._transition_status(claim_id, *ClaimStateValidator.for_operation("verify"))

    async def approve(self, claim_id: str) -> Claim:
        return await self._transition_status(claim_id, *ClaimStateValidator.for_operation("approve"))

    async def archive(self, claim_id: str) -> Claim:
        return await self._transition_status(claim_id, *ClaimStateValidator.for_operation("archive"))

    async def disburse(self, claim_id: str) -> Claim:
        """
        approved -> disbursed, calling the on-chain adapter first when enabled.

        Adapter exceptions, timeouts and explicit ``failed`` results are
        recorded and absorbed; the transition proceeds regardless.
        """
        claim = await self.find_one(claim_id)
        ClaimStateValidator.ensure_status(
            claim.status, ClaimStatus.APPROVED, ClaimStatus.DISBURSED, claim_id
        )

        onchain_result: Optional[DisburseResult] = None
        if self.onchain_enabled and self.onchain_adapter is not None:
            onchain_result = await self._disburse_onchain(claim)
        else:
            logger.info(f"⏭️ On-chain disbursement skipped for claim {claim_id} (disabled)")

        return await self._transition_status(
            claim_id, ClaimStatus.APPROVED, ClaimStatus.DISBURSED, onchain_result
        )

    async def _disburse_onchain(self, claim: Claim) -> Optional[DisburseResult]:
        params = DisburseParams(
            claim_id=claim.id,
            package_id=derive_package_id(claim.id),
            recipient_address=claim.recipient_ref,
            amount=str(claim.amount),
        )
        start = time.perf_counter()
        result: Optional[DisburseResult] = None

        try:
            logger.info(f"🔗 Calling on-chain adapter '{self.adapter_name}' for claim {claim.id}")
            result = await asyncio.wait_for(
                self.onchain_adapter.disburse(params), timeout=self.adapter_timeout
            )
            if result.status == OnchainStatus.FAILED:
                raise OnchainOperationError(DISBURSE_OPERATION)

        except Exception as e:
            duration = time.perf_counter() - start
            if isinstance(e, asyncio.TimeoutError):
                error_message = f"On-chain adapter timed out after {self.adapter_timeout}s"
            else:
                error_message = str(e) or type(e).__name__

            logger.error(
                f"❌ On-chain disbursement failed for claim {claim.id}: {error_message}",
                exc_info=not isinstance(e, asyncio.TimeoutError),
            )
            self._record_metrics("failed", duration)
            await self.audit_service.record(
                SYSTEM_ACTOR, "onchain", claim.id, "disburse_failed",
                {"error": error_message, "adapter": self.adapter_name},
            )
            return result

        duration = time.perf_counter() - start
        self._record_metrics(result.status.value, duration)
        logger.info(
            f"✅ On-chain disbursement completed for claim {claim.id}: "
            f"{result.transaction_hash} ({duration:.3f}s)"
        )
        await self.audit_service.record(
            SYSTEM_ACTOR, "onchain", claim.id, "disburse",
            {
                "transaction_hash": result.transaction_hash,
                "status": result.status.value,
                "amount_disbursed": result.amount_disbursed,
                "adapter": self.adapter_name,
                "metadata": result.metadata,
            },
        )
        return result

    def _record_metrics(self, outcome: str, duration: float) -> None:
        try:
            self.metrics_service.increment_onchain_operation(DISBURSE_OPERATION, self.adapter_name, outcome)
            self.metrics_service.record_onchain_duration(DISBURSE_OPERATION, self.adapter_name, duration)
        except Exception as e:
            logger.warning(f"⚠️ Failed to record on-chain metrics: {e}")

    async def _transition_status(
        self,
        claim_id: str,
        from_status: ClaimStatus,
        to_status: ClaimStatus,
        onchain_result: Optional[DisburseResult] = None,
    ) -> Claim:
        """Compare-and-swap ``from_status`` -> ``to_status`` and audit the change"""
        async with async_managed_session(self.session_factory) as session:
            current_status = (
                await session.execute(select(Claim.status).where(Claim.id == claim_id))
            ).scalar_one_or_none()

            swapped = False
            if current_status == from_status.value:
                result = await session.execute(
                    update(Claim)
                    .where(Claim.id == claim_id, Claim.status == from_status.value)
                    .values(status=to_status.value, updated_at=utc_now())
                    .execution_options(synchronize_session=False)
                )
                swapped = result.rowcount > 0
                if not swapped:
                    # Lost the race; report what the winner left behind
                    current_status = (
                        await session.execute(select(Claim.status).where(Claim.id == claim_id))
                    ).scalar_one_or_none()

        if current_status is None:
            raise NotFoundError("Claim not found")
        if not swapped:
            ClaimStateValidator.ensure_status(current_status, from_status, to_status, claim_id)
            raise InvalidTransitionError(current_status, to_status.value)

        logger.info(f"✅ Claim {claim_id}: {from_status.value} -> {to_status.value}")
        await self.audit_service.record(
            SYSTEM_ACTOR, "claim", claim_id, f"status_changed_to_{to_status.value}",
            self._transition_metadata(from_status, to_status, onchain_result),
        )
        return await self.find_one(claim_id)

    @staticmethod
    def _transition_metadata(
        from_status: ClaimStatus,
        to_status: ClaimStatus,
        onchain_result: Optional[DisburseResult],
    ) -> Dict[str, Any]:
        onchain = None
        if onchain_result is not None:
            onchain = {
                "transaction_hash": onchain_result.transaction_hash,
                "status": onchain_result.status.value,
            }
        return compact_metadata({
            "from": from_status.value,
            "to": to_status.value,
            "onchain_result": onchain,
        })
