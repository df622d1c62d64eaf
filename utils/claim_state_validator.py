"""
Claim State Transition Validator
================================

Claims advance along a single line with no branches and no skipping:

    requested -> verified -> approved -> disbursed -> archived

Every lifecycle operation names the state it starts from; the validator
rejects anything else so a claim can never be disbursed before approval or
archived before disbursement.
"""

import logging
from typing import Dict, Optional, Set, Tuple

from models import ClaimStatus
from utils.exceptions import InvalidTransitionError

logger = logging.getLogger(__name__)


class ClaimStateValidator:
    """Validates claim state transitions against the linear lifecycle"""

    VALID_TRANSITIONS: Dict[ClaimStatus, Set[ClaimStatus]] = {
        ClaimStatus.REQUESTED: {ClaimStatus.VERIFIED},
        ClaimStatus.VERIFIED: {ClaimStatus.APPROVED},
        ClaimStatus.APPROVED: {ClaimStatus.DISBURSED},
        ClaimStatus.DISBURSED: {ClaimStatus.ARCHIVED},
        ClaimStatus.ARCHIVED: set(),  # Terminal state
    }

    # Operation name -> (required current status, target status)
    OPERATIONS: Dict[str, Tuple[ClaimStatus, ClaimStatus]] = {
        "verify": (ClaimStatus.REQUESTED, ClaimStatus.VERIFIED),
        "approve": (ClaimStatus.VERIFIED, ClaimStatus.APPROVED),
        "disburse": (ClaimStatus.APPROVED, ClaimStatus.DISBURSED),
        "archive": (ClaimStatus.DISBURSED, ClaimStatus.ARCHIVED),
    }

    @classmethod
    def validate_transition(
        cls,
        from_status: ClaimStatus,
        to_status: ClaimStatus,
        claim_id: Optional[str] = None,
    ) -> Tuple[bool, str]:
        """
        Validate if a state transition is allowed.

        Returns:
            Tuple[bool, str]: (is_valid, reason)
        """
        claim_ref = f"Claim {claim_id}" if claim_id else "Claim"
        valid_next_states = cls.VALID_TRANSITIONS.get(from_status, set())

        if to_status in valid_next_states:
            return True, "Valid state transition"

        logger.warning(
            f"🚫 INVALID_TRANSITION: {claim_ref} {from_status.value} -> {to_status.value} "
            f"Valid options: {[s.value for s in valid_next_states]}"
        )
        return False, f"Cannot transition from {from_status.value} to {to_status.value}"

    @classmethod
    def ensure_status(
        cls,
        current_status: str,
        required_status: ClaimStatus,
        target_status: ClaimStatus,
        claim_id: Optional[str] = None,
    ) -> None:
        """
        Raise InvalidTransitionError unless the claim sits exactly in ``required_status``.

        ``current_status`` is the raw stored value; unknown values are rejected too.
        """
        if current_status != required_status.value:
            logger.warning(
                f"🚫 TRANSITION_BLOCKED: Claim {claim_id} is {current_status}, "
                f"{target_status.value} requires {required_status.value}"
            )
            raise InvalidTransitionError(current_status, target_status.value)

        is_valid, reason = cls.validate_transition(required_status, target_status, claim_id)
        if not is_valid:
            raise InvalidTransitionError(current_status, target_status.value, reason)

    @classmethod
    def for_operation(cls, operation: str) -> Tuple[ClaimStatus, ClaimStatus]:
        """(from, to) pair for a named lifecycle operation"""
        try:
            return cls.OPERATIONS[operation]
        except KeyError:
            raise ValueError(f"Unknown claim operation: {operation}") from None

    @classmethod
    def get_valid_next_states(cls, current_status: ClaimStatus) -> Set[ClaimStatus]:
        return cls.VALID_TRANSITIONS.get(current_status, set())

    @classmethod
    def is_terminal_state(cls, status: ClaimStatus) -> bool:
        return len(cls.VALID_TRANSITIONS.get(status, set())) == 0
