"""Core donation ledger logic."""
from .errors import (
    AmountMismatchError,
    ConflictError,
    CrowdfundError,
    GatewayError,
    GatewayTimeoutError,
    LedgerError,
    NotFoundError,
    SignatureError,
    ValidationError,
)
from .status import ALLOWED_TRANSITIONS, can_transition, ensure_transition

__all__ = [
    "ALLOWED_TRANSITIONS",
    "AmountMismatchError",
    "ConflictError",
    "CrowdfundError",
    "GatewayError",
    "GatewayTimeoutError",
    "LedgerError",
    "NotFoundError",
    "SignatureError",
    "ValidationError",
    "can_transition",
    "ensure_transition",
]
