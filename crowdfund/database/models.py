"""SQLAlchemy database models for campaigns and donations."""
import enum
import uuid
from datetime import date, datetime, timezone
from typing import Any, Dict, Optional

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    CheckConstraint,
    Date,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    Uuid,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    """Base class for all database models."""

    pass


class DonationStatus(str, enum.Enum):
    """Lifecycle status of a donation."""

    PENDING = "PENDING"
    SUCCESSFUL = "SUCCESSFUL"
    FAILED = "FAILED"
    REFUNDED = "REFUNDED"


class PaymentMethod(str, enum.Enum):
    """Supported payment gateways."""

    ZALOPAY = "ZALOPAY"
    STRIPE = "STRIPE"


class CampaignStatus(str, enum.Enum):
    """Lifecycle status of a campaign."""

    PREPARING = "preparing"
    ACTIVE = "active"
    ENDED = "ended"


class HostType(str, enum.Enum):
    """Kind of account hosting a campaign."""

    USER = "user"
    ADMIN = "admin"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _enum_column(enum_cls: type[enum.Enum]) -> Enum:
    return Enum(
        enum_cls,
        native_enum=False,
        length=16,
        values_callable=lambda members: [m.value for m in members],
        validate_strings=True,
    )


class Campaign(Base):
    """
    Fundraising campaigns.

    `current_fund` is owned by the donation ledger: it only changes through
    guarded increments/decrements applied together with a donation status
    transition.
    """

    __tablename__ = "campaigns"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    host_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    host_type: Mapped[HostType] = mapped_column(
        _enum_column(HostType), nullable=False, default=HostType.USER
    )
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False)
    campaign_type: Mapped[str] = mapped_column(String(64), nullable=False)
    target_amount: Mapped[int] = mapped_column(BigInteger, nullable=False)
    current_fund: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    status: Mapped[CampaignStatus] = mapped_column(
        _enum_column(CampaignStatus), nullable=False, default=CampaignStatus.PREPARING
    )
    end_date: Mapped[Optional[date]] = mapped_column(Date, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=_utcnow,
        onupdate=_utcnow,
    )

    __table_args__ = (
        CheckConstraint("target_amount > 0", name="positive_target"),
        CheckConstraint("current_fund >= 0", name="non_negative_fund"),
        Index("idx_campaigns_status", "status"),
    )

    def __repr__(self) -> str:
        """String representation of Campaign."""
        return (
            f"<Campaign(id={self.id}, name={self.name!r}, "
            f"current_fund={self.current_fund}, target={self.target_amount})>"
        )


class Donation(Base):
    """
    Donation records.

    One row per attempted transfer; `transaction_code` correlates the row
    with exactly one gateway order.
    """

    __tablename__ = "donations"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    donor_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    campaign_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("campaigns.id"), nullable=False, index=True
    )
    amount: Mapped[int] = mapped_column(BigInteger, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="VND")
    message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    payment_method: Mapped[PaymentMethod] = mapped_column(
        _enum_column(PaymentMethod), nullable=False
    )
    transaction_code: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    gateway_transaction_id: Mapped[Optional[str]] = mapped_column(
        String(255), nullable=True, index=True
    )
    status: Mapped[DonationStatus] = mapped_column(
        _enum_column(DonationStatus), nullable=False, default=DonationStatus.PENDING
    )
    is_anonymous: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow, index=True
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=_utcnow,
        onupdate=_utcnow,
    )

    __table_args__ = (
        CheckConstraint("amount > 0", name="positive_amount"),
        Index("idx_donations_donor_campaign", "donor_id", "campaign_id"),
        Index("idx_donations_status_created", "status", "created_at"),
        Index("idx_donations_method_status", "payment_method", "status"),
    )

    def __repr__(self) -> str:
        """String representation of Donation."""
        return (
            f"<Donation(id={self.id}, code={self.transaction_code}, "
            f"amount={self.amount}, status={self.status.value})>"
        )


class DonationEvent(Base):
    """
    Donation events audit trail table.

    Stores every ledger transition of a donation. Immutable once written.
    """

    __tablename__ = "donation_events"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    donation_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False, index=True)
    event_type: Mapped[str] = mapped_column(String(100), nullable=False)
    event_data: Mapped[Dict[str, Any]] = mapped_column(JSON, nullable=False)
    correlation_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False, index=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow, index=True
    )

    __table_args__ = (Index("idx_donation_events_type", "event_type"),)

    def __repr__(self) -> str:
        """String representation of DonationEvent."""
        return (
            f"<DonationEvent(id={self.id}, donation_id={self.donation_id}, "
            f"type={self.event_type})>"
        )


class LedgerAudit(Base):
    """
    Ledger audit runs.

    Stores the result of recomputing campaign totals from successful
    donations and comparing them with the running `current_fund`.
    """

    __tablename__ = "ledger_audits"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    status: Mapped[str] = mapped_column(String(50), nullable=False)
    campaigns_checked: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    discrepancy_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    discrepancy_amount: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    details: Mapped[Optional[Dict[str, Any]]] = mapped_column(JSON, nullable=True)
    started_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    completed_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    __table_args__ = (
        CheckConstraint(
            "status IN ('in_progress', 'completed', 'failed')",
            name="valid_audit_status",
        ),
    )

    def __repr__(self) -> str:
        """String representation of LedgerAudit."""
        return (
            f"<LedgerAudit(id={self.id}, status={self.status}, "
            f"discrepancies={self.discrepancy_count})>"
        )
