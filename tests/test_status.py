"""
Unit tests for the donation status state machine.
"""
import pytest

from crowdfund.core.errors import ConflictError
from crowdfund.core.status import (
    ALLOWED_TRANSITIONS,
    can_transition,
    ensure_transition,
    is_deletable,
    is_terminal,
)
from crowdfund.database.models import DonationStatus


class TestDonationStatus:
    """Test suite for donation status transitions."""

    @pytest.mark.unit
    def test_transition_table_covers_every_status(self) -> None:
        """Every status has an entry, so new members cannot be forgotten."""
        assert set(ALLOWED_TRANSITIONS) == set(DonationStatus)

    @pytest.mark.unit
    @pytest.mark.parametrize(
        "current,target",
        [
            (DonationStatus.PENDING, DonationStatus.SUCCESSFUL),
            (DonationStatus.PENDING, DonationStatus.FAILED),
            (DonationStatus.SUCCESSFUL, DonationStatus.REFUNDED),
        ],
    )
    def test_allowed_transitions(self, current: DonationStatus, target: DonationStatus) -> None:
        assert can_transition(current, target)
        ensure_transition(current, target)

    @pytest.mark.unit
    @pytest.mark.parametrize(
        "current,target",
        [
            (DonationStatus.FAILED, DonationStatus.SUCCESSFUL),
            (DonationStatus.FAILED, DonationStatus.PENDING),
            (DonationStatus.SUCCESSFUL, DonationStatus.PENDING),
            (DonationStatus.SUCCESSFUL, DonationStatus.FAILED),
            (DonationStatus.REFUNDED, DonationStatus.SUCCESSFUL),
            (DonationStatus.PENDING, DonationStatus.REFUNDED),
        ],
    )
    def test_rejected_transitions(self, current: DonationStatus, target: DonationStatus) -> None:
        assert not can_transition(current, target)
        with pytest.raises(ConflictError, match="Cannot change donation status"):
            ensure_transition(current, target)

    @pytest.mark.unit
    def test_conflict_error_status_code(self) -> None:
        with pytest.raises(ConflictError) as exc_info:
            ensure_transition(DonationStatus.REFUNDED, DonationStatus.PENDING)
        assert exc_info.value.status_code == 409
        assert exc_info.value.context == {"current": "REFUNDED", "target": "PENDING"}

    @pytest.mark.unit
    def test_terminal_statuses(self) -> None:
        assert is_terminal(DonationStatus.FAILED)
        assert is_terminal(DonationStatus.REFUNDED)
        assert not is_terminal(DonationStatus.PENDING)
        assert not is_terminal(DonationStatus.SUCCESSFUL)

    @pytest.mark.unit
    def test_only_unpaid_donations_are_deletable(self) -> None:
        assert is_deletable(DonationStatus.PENDING)
        assert is_deletable(DonationStatus.FAILED)
        assert not is_deletable(DonationStatus.SUCCESSFUL)
        assert not is_deletable(DonationStatus.REFUNDED)
