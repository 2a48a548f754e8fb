"""
Donation ledger primitives.

Every status change is one guarded UPDATE (``WHERE status = <expected>``)
followed, in the same transaction, by the matching change of the campaign's
``current_fund`` and an audit event. Concurrent deliveries of the same
transition race on the guard; exactly one of them sees a returned row and
moves money, the others observe ``applied=False``.
"""
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import structlog
from sqlalchemy import ColumnElement, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from crowdfund.core.errors import LedgerError
from crowdfund.database.models import Campaign, Donation, DonationEvent, DonationStatus
from crowdfund.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class LedgerOutcome:
    """Result of a guarded transition."""

    applied: bool
    donation: Optional[Donation]

    @property
    def found(self) -> bool:
        return self.donation is not None


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _selector(
    donation_id: Optional[uuid.UUID] = None,
    transaction_code: Optional[str] = None,
    gateway_transaction_id: Optional[str] = None,
) -> List[ColumnElement[bool]]:
    given = [v for v in (donation_id, transaction_code, gateway_transaction_id) if v is not None]
    if len(given) != 1:
        raise ValueError("Exactly one donation selector is required")
    if donation_id is not None:
        return [Donation.id == donation_id]
    if transaction_code is not None:
        return [Donation.transaction_code == transaction_code]
    return [Donation.gateway_transaction_id == gateway_transaction_id]


async def load_donation(
    db: AsyncSession,
    donation_id: Optional[uuid.UUID] = None,
    transaction_code: Optional[str] = None,
    gateway_transaction_id: Optional[str] = None,
) -> Optional[Donation]:
    """Load the current state of a donation, bypassing the identity map."""
    stmt = (
        select(Donation)
        .where(*_selector(donation_id, transaction_code, gateway_transaction_id))
        .execution_options(populate_existing=True)
    )
    result = await db.execute(stmt)
    return result.scalars().first()


def _record_event(
    db: AsyncSession,
    donation_id: uuid.UUID,
    event_type: str,
    event_data: Dict[str, Any],
    correlation_id: uuid.UUID,
) -> None:
    db.add(
        DonationEvent(
            donation_id=donation_id,
            event_type=event_type,
            event_data=event_data,
            correlation_id=correlation_id,
            created_at=_now(),
        )
    )


async def _adjust_campaign_fund(db: AsyncSession, campaign_id: uuid.UUID, delta: int) -> None:
    stmt = (
        update(Campaign)
        .where(Campaign.id == campaign_id, Campaign.current_fund + delta >= 0)
        .values(current_fund=Campaign.current_fund + delta, updated_at=_now())
        .returning(Campaign.id)
        .execution_options(synchronize_session=False)
    )
    result = await db.execute(stmt)
    if result.first() is None:
        raise LedgerError(
            "Campaign fund update affected no rows",
            campaign_id=str(campaign_id),
            delta=delta,
        )


async def _transition(
    db: AsyncSession,
    where: List[ColumnElement[bool]],
    expected: DonationStatus,
    target: DonationStatus,
    fund_sign: int,
    event_type: str,
    event_data: Dict[str, Any],
    correlation_id: uuid.UUID,
    values: Optional[Dict[str, Any]] = None,
) -> LedgerOutcome:
    stmt = (
        update(Donation)
        .where(*where, Donation.status == expected)
        .values(status=target, updated_at=_now(), **(values or {}))
        .returning(Donation.id, Donation.campaign_id, Donation.amount)
        .execution_options(synchronize_session=False)
    )

    try:
        row = (await db.execute(stmt)).first()
        if row is None:
            await db.commit()
            return LedgerOutcome(applied=False, donation=None)

        if fund_sign:
            await _adjust_campaign_fund(db, row.campaign_id, fund_sign * row.amount)

        _record_event(
            db,
            donation_id=row.id,
            event_type=event_type,
            event_data={"from": expected.value, "to": target.value, "amount": row.amount, **event_data},
            correlation_id=correlation_id,
        )
        await db.commit()

    except Exception as e:
        await db.rollback()
        logger.critical(
            "ledger_transition_failed",
            correlation_id=str(correlation_id),
            expected=expected.value,
            target=target.value,
            error=str(e),
        )
        if isinstance(e, LedgerError):
            raise
        raise LedgerError(f"Ledger transition to {target.value} failed: {e}") from e

    metrics.record_ledger_transition(target.value)
    logger.info(
        "ledger_transition_applied",
        correlation_id=str(correlation_id),
        donation_id=str(row.id),
        campaign_id=str(row.campaign_id),
        amount=row.amount,
        target=target.value,
    )
    return LedgerOutcome(applied=True, donation=await load_donation(db, donation_id=row.id))


async def credit_donation(
    db: AsyncSession,
    *,
    donation_id: Optional[uuid.UUID] = None,
    transaction_code: Optional[str] = None,
    gateway_transaction_id: Optional[str] = None,
    expected_amount: Optional[int] = None,
    record_gateway_transaction_id: Optional[str] = None,
    correlation_id: Optional[uuid.UUID] = None,
    source: str = "callback",
) -> LedgerOutcome:
    """
    Move a donation PENDING -> SUCCESSFUL and add its amount to the campaign.

    When `expected_amount` is given it is part of the guard, so a mismatched
    amount never credits anything.

    Returns:
        LedgerOutcome: `applied` is False when the guard did not match; the
        returned donation (if any) tells the caller why.
    """
    where = _selector(donation_id, transaction_code, gateway_transaction_id)
    if expected_amount is not None:
        where.append(Donation.amount == expected_amount)

    values: Dict[str, Any] = {"error_message": None}
    if record_gateway_transaction_id is not None:
        values["gateway_transaction_id"] = record_gateway_transaction_id

    outcome = await _transition(
        db,
        where=where,
        expected=DonationStatus.PENDING,
        target=DonationStatus.SUCCESSFUL,
        fund_sign=1,
        event_type="donation.credited",
        event_data={"source": source, "gateway_transaction_id": record_gateway_transaction_id},
        correlation_id=correlation_id or uuid.uuid4(),
        values=values,
    )
    if outcome.applied:
        return outcome
    return LedgerOutcome(
        applied=False,
        donation=await load_donation(db, donation_id, transaction_code, gateway_transaction_id),
    )


async def fail_donation(
    db: AsyncSession,
    *,
    donation_id: Optional[uuid.UUID] = None,
    transaction_code: Optional[str] = None,
    gateway_transaction_id: Optional[str] = None,
    reason: Optional[str] = None,
    correlation_id: Optional[uuid.UUID] = None,
    source: str = "gateway",
) -> LedgerOutcome:
    """Move a donation PENDING -> FAILED. The campaign is untouched."""
    outcome = await _transition(
        db,
        where=_selector(donation_id, transaction_code, gateway_transaction_id),
        expected=DonationStatus.PENDING,
        target=DonationStatus.FAILED,
        fund_sign=0,
        event_type="donation.failed",
        event_data={"source": source, "reason": reason},
        correlation_id=correlation_id or uuid.uuid4(),
        values={"error_message": reason},
    )
    if outcome.applied:
        return outcome
    return LedgerOutcome(
        applied=False,
        donation=await load_donation(db, donation_id, transaction_code, gateway_transaction_id),
    )


async def refund_donation(
    db: AsyncSession,
    *,
    donation_id: Optional[uuid.UUID] = None,
    transaction_code: Optional[str] = None,
    gateway_transaction_id: Optional[str] = None,
    refund_id: Optional[str] = None,
    correlation_id: Optional[uuid.UUID] = None,
    source: str = "operator",
) -> LedgerOutcome:
    """
    Move a donation SUCCESSFUL -> REFUNDED and subtract its amount from the campaign.

    Callers must only invoke this after the gateway executed the refund.
    """
    outcome = await _transition(
        db,
        where=_selector(donation_id, transaction_code, gateway_transaction_id),
        expected=DonationStatus.SUCCESSFUL,
        target=DonationStatus.REFUNDED,
        fund_sign=-1,
        event_type="donation.refunded",
        event_data={"source": source, "refund_id": refund_id},
        correlation_id=correlation_id or uuid.uuid4(),
    )
    if outcome.applied:
        return outcome
    return LedgerOutcome(
        applied=False,
        donation=await load_donation(db, donation_id, transaction_code, gateway_transaction_id),
    )
