"""
Claim State Validator Tests
"""

import pytest

from models import ClaimStatus
from utils.claim_state_validator import ClaimStateValidator
from utils.exceptions import InvalidTransitionError


class TestClaimStateValidator:
    """Linear claim lifecycle rules"""

    @pytest.mark.parametrize("from_status,to_status", [
        (ClaimStatus.REQUESTED, ClaimStatus.VERIFIED),
        (ClaimStatus.VERIFIED, ClaimStatus.APPROVED),
        (ClaimStatus.APPROVED, ClaimStatus.DISBURSED),
        (ClaimStatus.DISBURSED, ClaimStatus.ARCHIVED),
    ])
    def test_forward_steps_are_valid(self, from_status, to_status):
        is_valid, reason = ClaimStateValidator.validate_transition(from_status, to_status, "claim-1")
        assert is_valid
        assert reason == "Valid state transition"

    @pytest.mark.parametrize("from_status,to_status", [
        (ClaimStatus.REQUESTED, ClaimStatus.APPROVED),
        (ClaimStatus.REQUESTED, ClaimStatus.DISBURSED),
        (ClaimStatus.VERIFIED, ClaimStatus.REQUESTED),
        (ClaimStatus.APPROVED, ClaimStatus.ARCHIVED),
        (ClaimStatus.DISBURSED, ClaimStatus.APPROVED),
        (ClaimStatus.ARCHIVED, ClaimStatus.REQUESTED),
        (ClaimStatus.VERIFIED, ClaimStatus.VERIFIED),
    ])
    def test_skips_and_reversals_are_invalid(self, from_status, to_status):
        is_valid, reason = ClaimStateValidator.validate_transition(from_status, to_status)
        assert not is_valid
        assert reason == f"Cannot transition from {from_status.value} to {to_status.value}"

    def test_archived_is_the_only_terminal_state(self):
        terminal = [s for s in ClaimStatus if ClaimStateValidator.is_terminal_state(s)]
        assert terminal == [ClaimStatus.ARCHIVED]

    def test_each_state_has_at_most_one_successor(self):
        for status in ClaimStatus:
            assert len(ClaimStateValidator.get_valid_next_states(status)) <= 1

    def test_ensure_status_raises_with_current_status(self):
        with pytest.raises(InvalidTransitionError) as exc_info:
            ClaimStateValidator.ensure_status(
                "requested", ClaimStatus.APPROVED, ClaimStatus.DISBURSED, "claim-1"
            )
        assert exc_info.value.message == "Cannot transition from requested to disbursed"
        assert exc_info.value.http_status == 400

    def test_ensure_status_passes_on_match(self):
        ClaimStateValidator.ensure_status("approved", ClaimStatus.APPROVED, ClaimStatus.DISBURSED)

    def test_operation_lookup(self):
        assert ClaimStateValidator.for_operation("archive") == (ClaimStatus.DISBURSED, ClaimStatus.ARCHIVED)
        with pytest.raises(ValueError):
            ClaimStateValidator.for_operation("reopen")
