"""
Aid Claims Platform - Database Schema
=====================================

Schema for the humanitarian-aid claim lifecycle:
- Campaigns that claims draw against
- Claims advancing requested -> verified -> approved -> disbursed -> archived
- OTP verification sessions for email/phone identity confirmation
- Durable background jobs (notifications, verification sweeps, on-chain operations)
- Append-only audit trail
"""

import uuid
from enum import Enum

from sqlalchemy import (
    Column, Integer, String, Numeric, DateTime, Text, JSON,
    ForeignKey, Index, CheckConstraint,
)
from sqlalchemy.orm import DeclarativeBase, relationship

from utils.helpers import utc_now


class Base(DeclarativeBase):
    """Base class for all database models"""
    pass


def _uuid_str() -> str:
    return str(uuid.uuid4())


# ============================================================================
# ENUMS - Business Logic Constants
# ============================================================================

class CampaignStatus(Enum):
    """Campaign lifecycle states"""
    DRAFT = "draft"
    ACTIVE = "active"
    CLOSED = "closed"
    ARCHIVED = "archived"


class ClaimStatus(Enum):
    """Claim lifecycle states (linear)"""
    REQUESTED = "requested"
    VERIFIED = "verified"
    APPROVED = "approved"
    DISBURSED = "disbursed"
    ARCHIVED = "archived"


class VerificationChannel(Enum):
    EMAIL = "email"
    PHONE = "phone"


class VerificationStatus(Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    EXPIRED = "expired"


class JobStatus(Enum):
    """Stored job states. A WAITING job with run_at in the future is reported as delayed."""
    WAITING = "waiting"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"


class BackoffType(Enum):
    FIXED = "fixed"
    EXPONENTIAL = "exponential"


# ============================================================================
# MODELS
# ============================================================================

class Campaign(Base):
    """Funding pool that claims draw against"""
    __tablename__ = 'campaigns'

    id = Column(String(64), primary_key=True, default=_uuid_str)
    name = Column(String(255), nullable=False)
    budget = Column(Numeric(14, 2), nullable=False)
    status = Column(String(20), default=CampaignStatus.DRAFT.value, nullable=False)
    extra_data = Column("metadata", JSON, nullable=True)  # Opaque key/value document

    created_at = Column(DateTime, default=utc_now, nullable=False)
    updated_at = Column(DateTime, default=utc_now, onupdate=utc_now, nullable=False)
    archived_at = Column(DateTime, nullable=True)

    claims = relationship("Claim", back_populates="campaign")

    __table_args__ = (
        CheckConstraint('budget >= 0', name='ck_campaign_budget_non_negative'),
        CheckConstraint(
            "status IN ('draft', 'active', 'closed', 'archived')",
            name='ck_campaign_status_valid',
        ),
        Index('ix_campaigns_status', 'status'),
    )

    def __repr__(self) -> str:
        return f"<Campaign {self.id} {self.name!r} status={self.status}>"


class Claim(Base):
    """Single aid-disbursement request tied to a campaign"""
    __tablename__ = 'claims'

    id = Column(String(64), primary_key=True, default=_uuid_str)
    campaign_id = Column(String(64), ForeignKey('campaigns.id'), nullable=False, index=True)

    amount = Column(Numeric(14, 2), nullable=False)
    status = Column(String(20), default=ClaimStatus.REQUESTED.value, nullable=False)

    recipient_ref = Column(String(255), nullable=False)  # Used as recipient address on disbursement
    evidence_ref = Column(String(255), nullable=True)

    created_at = Column(DateTime, default=utc_now, nullable=False)
    updated_at = Column(DateTime, default=utc_now, onupdate=utc_now, nullable=False)

    # Eager so records returned from closed sessions still carry their campaign
    campaign = relationship("Campaign", back_populates="claims", lazy="selectin")

    __table_args__ = (
        CheckConstraint('amount >= 0', name='ck_claim_amount_non_negative'),
        CheckConstraint(
            "status IN ('requested', 'verified', 'approved', 'disbursed', 'archived')",
            name='ck_claim_status_valid',
        ),
        Index('ix_claims_campaign_status', 'campaign_id', 'status'),
    )

    def __repr__(self) -> str:
        return f"<Claim {self.id} amount={self.amount} status={self.status}>"


class VerificationSession(Base):
    """Time-boxed, attempt-limited OTP confirmation of an email or phone"""
    __tablename__ = 'verification_sessions'

    id = Column(String(64), primary_key=True, default=_uuid_str)
    channel = Column(String(10), nullable=False)
    identifier = Column(String(255), nullable=False)  # Normalized email or phone
    code = Column(String(10), nullable=False)

    attempts = Column(Integer, default=0, nullable=False)
    resend_count = Column(Integer, default=0, nullable=False)
    status = Column(String(20), default=VerificationStatus.PENDING.value, nullable=False)
    expires_at = Column(DateTime, nullable=False)

    created_at = Column(DateTime, default=utc_now, nullable=False)
    updated_at = Column(DateTime, default=utc_now, onupdate=utc_now, nullable=False)

    __table_args__ = (
        CheckConstraint("channel IN ('email', 'phone')", name='ck_verification_channel_valid'),
        CheckConstraint(
            "status IN ('pending', 'completed', 'expired')",
            name='ck_verification_status_valid',
        ),
        Index('ix_verification_identifier_created', 'identifier', 'created_at'),
        Index('ix_verification_status_expires', 'status', 'expires_at'),
    )


class BackgroundJob(Base):
    """Durable queue entry processed by a per-queue worker pool"""
    __tablename__ = 'background_jobs'

    id = Column(String(64), primary_key=True, default=lambda: f"job_{uuid.uuid4().hex}")
    queue_name = Column(String(50), nullable=False)
    job_type = Column(String(50), nullable=False)
    payload = Column(JSON, nullable=True)

    status = Column(String(20), default=JobStatus.WAITING.value, nullable=False)
    attempts_made = Column(Integer, default=0, nullable=False)
    max_attempts = Column(Integer, default=1, nullable=False)
    backoff_type = Column(String(20), default=BackoffType.FIXED.value, nullable=False)
    backoff_delay_ms = Column(Integer, default=0, nullable=False)
    run_at = Column(DateTime, default=utc_now, nullable=False)

    result = Column(JSON, nullable=True)
    error_message = Column(Text, nullable=True)
    locked_by = Column(String(100), nullable=True)
    locked_at = Column(DateTime, nullable=True)
    lock_expires_at = Column(DateTime, nullable=True)  # Active jobs past this are reclaimable

    created_at = Column(DateTime, default=utc_now, nullable=False)
    updated_at = Column(DateTime, default=utc_now, onupdate=utc_now, nullable=False)
    started_at = Column(DateTime, nullable=True)
    finished_at = Column(DateTime, nullable=True)

    __table_args__ = (
        CheckConstraint('max_attempts >= 1', name='ck_job_max_attempts_positive'),
        CheckConstraint(
            "status IN ('waiting', 'active', 'completed', 'failed')",
            name='ck_job_status_valid',
        ),
        Index('ix_jobs_queue_status_run_at', 'queue_name', 'status', 'run_at'),
        Index('ix_jobs_status_lock_expires', 'status', 'lock_expires_at'),
    )

    @property
    def attempt(self) -> int:
        """Current attempt number (1-based once the job has been claimed)"""
        return self.attempts_made


class AuditLog(Base):
    """Append-only record of who did what to which entity"""
    __tablename__ = 'audit_logs'

    id = Column(Integer, primary_key=True, autoincrement=True)
    actor_id = Column(String(64), nullable=False)
    entity = Column(String(50), nullable=False)
    entity_id = Column(String(64), nullable=False)
    action = Column(String(100), nullable=False)
    extra_data = Column("metadata", JSON, nullable=True)

    created_at = Column(DateTime, default=utc_now, nullable=False)

    __table_args__ = (
        Index('ix_audit_entity_id', 'entity', 'entity_id'),
        Index('ix_audit_actor_created', 'actor_id', 'created_at'),
        Index('ix_audit_created', 'created_at'),
    )

    @property
    def event_name(self) -> str:
        """Dotted event name, e.g. ``claim.created`` or ``onchain.disburse``"""
        return f"{self.entity}.{self.action}"
