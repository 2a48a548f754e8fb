"""Database package for the crowdfunding backend."""
from .connection import get_db, init_db
from .models import (
    Base,
    Campaign,
    CampaignStatus,
    Donation,
    DonationEvent,
    DonationStatus,
    HostType,
    LedgerAudit,
    PaymentMethod,
)

__all__ = [
    "Base",
    "Campaign",
    "CampaignStatus",
    "Donation",
    "DonationEvent",
    "DonationStatus",
    "HostType",
    "LedgerAudit",
    "PaymentMethod",
    "get_db",
    "init_db",
]
