"""
On-chain Adapter
Contract for escrow operations on a settlement chain, plus a local mock

The adapter is selected by name at startup. Only the mock is implemented;
the Soroban adapter name is reserved and selecting it fails fast.
"""

import hashlib
import json
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field, asdict
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional

from config import Config
from utils.exceptions import AdapterNotImplementedError, ConfigurationError
from utils.helpers import isoformat_utc, utc_now

logger = logging.getLogger(__name__)


class OnchainStatus(Enum):
    SUCCESS = "success"
    FAILED = "failed"


def derive_package_id(claim_id: str) -> str:
    """
    Deterministic on-chain package id for a claim.

    First 16 hex characters of sha256("package-" + claim_id), read as an
    unsigned integer and rendered in decimal.
    """
    digest = hashlib.sha256(f"package-{claim_id}".encode("utf-8")).hexdigest()
    return str(int(digest[:16], 16))


# ============================================================================
# PARAMETERS AND RESULTS
# ============================================================================

@dataclass(frozen=True)
class InitEscrowParams:
    admin_address: str


@dataclass(frozen=True)
class CreateClaimParams:
    claim_id: str
    recipient_address: str
    amount: str  # Decimal string to preserve precision
    token_address: str
    expires_at: Optional[int] = None  # Unix timestamp


@dataclass(frozen=True)
class DisburseParams:
    claim_id: str
    package_id: str
    recipient_address: Optional[str] = None
    amount: Optional[str] = None


@dataclass(frozen=True)
class OnchainResult:
    """Fields shared by every operation result; ``metadata`` is an open extension"""

    transaction_hash: str
    timestamp: datetime
    status: OnchainStatus
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def succeeded(self) -> bool:
        return self.status == OnchainStatus.SUCCESS

    def to_dict(self) -> Dict[str, Any]:
        """JSON-friendly rendering for audit metadata and job results"""
        data = asdict(self)
        data["status"] = self.status.value
        data["timestamp"] = isoformat_utc(self.timestamp)
        return data


@dataclass(frozen=True)
class InitEscrowResult(OnchainResult):
    escrow_address: str = ""


@dataclass(frozen=True)
class CreateClaimResult(OnchainResult):
    package_id: str = ""


@dataclass(frozen=True)
class DisburseResult(OnchainResult):
    amount_disbursed: str = "0"


# ============================================================================
# ADAPTERS
# ============================================================================

class OnchainAdapter(ABC):
    """Escrow operations against a settlement chain"""

    name: str = "abstract"

    @abstractmethod
    async def init_escrow(self, params: InitEscrowParams) -> InitEscrowResult:
        """Initialize the escrow contract with an admin address"""

    @abstractmethod
    async def create_claim(self, params: CreateClaimParams) -> CreateClaimResult:
        """Create a claim package on-chain"""

    @abstractmethod
    async def disburse(self, params: DisburseParams) -> DisburseResult:
        """Disburse funds for a claim package"""


class MockOnchainAdapter(OnchainAdapter):
    """Deterministic adapter with no network I/O; every call succeeds"""

    name = "mock"

    @staticmethod
    def _hash(operation: str, payload: Dict[str, Any]) -> str:
        material = json.dumps({"operation": operation, **payload}, sort_keys=True, default=str)
        return "0x" + hashlib.sha256(material.encode("utf-8")).hexdigest()

    def _metadata(self, **extra: Any) -> Dict[str, Any]:
        return {"adapter": self.name, **extra}

    async def init_escrow(self, params: InitEscrowParams) -> InitEscrowResult:
        payload = asdict(params)
        escrow_address = self._hash("escrow-address", payload)
        logger.info(f"🧪 Mock init_escrow for admin {params.admin_address}")
        return InitEscrowResult(
            transaction_hash=self._hash("init_escrow", payload),
            timestamp=utc_now(),
            status=OnchainStatus.SUCCESS,
            metadata=self._metadata(admin_address=params.admin_address),
            escrow_address=escrow_address,
        )

    async def create_claim(self, params: CreateClaimParams) -> CreateClaimResult:
        logger.info(f"🧪 Mock create_claim for claim {params.claim_id}")
        return CreateClaimResult(
            transaction_hash=self._hash("create_claim", asdict(params)),
            timestamp=utc_now(),
            status=OnchainStatus.SUCCESS,
            metadata=self._metadata(
                claim_id=params.claim_id,
                token_address=params.token_address,
                expires_at=params.expires_at,
            ),
            package_id=derive_package_id(params.claim_id),
        )

    async def disburse(self, params: DisburseParams) -> DisburseResult:
        logger.info(f"🧪 Mock disburse for claim {params.claim_id} package {params.package_id}")
        return DisburseResult(
            transaction_hash=self._hash("disburse", asdict(params)),
            timestamp=utc_now(),
            status=OnchainStatus.SUCCESS,
            metadata=self._metadata(claim_id=params.claim_id, package_id=params.package_id),
            amount_disbursed=params.amount if params.amount is not None else "0",
        )


def create_onchain_adapter(name: Optional[str] = None) -> OnchainAdapter:
    """
    Build the adapter named by ``name`` (default Config.ONCHAIN_ADAPTER).

    Raises ConfigurationError for unknown names and AdapterNotImplementedError
    for names reserved for adapters that do not exist yet.
    """
    adapter_type = (name or Config.ONCHAIN_ADAPTER or "mock").strip().lower()

    if adapter_type == "mock":
        logger.info("🔗 On-chain adapter: mock")
        return MockOnchainAdapter()
    if adapter_type == "soroban":
        raise AdapterNotImplementedError(
            "Soroban adapter not yet implemented. Use ONCHAIN_ADAPTER=mock"
        )
    raise ConfigurationError(
        f"Unknown ONCHAIN_ADAPTER: {adapter_type}. "
        f"Supported values: {', '.join(Config.SUPPORTED_ONCHAIN_ADAPTERS)}"
    )
