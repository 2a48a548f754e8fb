"""Donation status transitions."""
from types import MappingProxyType
from typing import FrozenSet, Mapping

from crowdfund.core.errors import ConflictError
from crowdfund.database.models import DonationStatus

ALLOWED_TRANSITIONS: Mapping[DonationStatus, FrozenSet[DonationStatus]] = MappingProxyType(
    {
        DonationStatus.PENDING: frozenset({DonationStatus.SUCCESSFUL, DonationStatus.FAILED}),
        DonationStatus.SUCCESSFUL: frozenset({DonationStatus.REFUNDED}),
        DonationStatus.FAILED: frozenset(),
        DonationStatus.REFUNDED: frozenset(),
    }
)

# Statuses whose amount is counted in a campaign's current fund
CREDITED_STATUSES = frozenset({DonationStatus.SUCCESSFUL})

DELETABLE_STATUSES = frozenset({DonationStatus.PENDING, DonationStatus.FAILED})


def can_transition(current: DonationStatus, target: DonationStatus) -> bool:
    """Return True if `current -> target` is a valid transition."""
    return target in ALLOWED_TRANSITIONS[current]


def ensure_transition(current: DonationStatus, target: DonationStatus) -> None:
    """
    Validate a donation status transition.

    Raises:
        ConflictError: If the transition is not allowed
    """
    if not can_transition(current, target):
        raise ConflictError(
            f"Cannot change donation status from {current.value} to {target.value}",
            current=current.value,
            target=target.value,
        )


def is_terminal(status: DonationStatus) -> bool:
    return not ALLOWED_TRANSITIONS[status]


def is_deletable(status: DonationStatus) -> bool:
    return status in DELETABLE_STATUSES
