"""Donation queries and housekeeping."""
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional

import structlog
from sqlalchemy import delete, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from crowdfund.core.errors import ConflictError, NotFoundError
from crowdfund.core.ledger import load_donation
from crowdfund.core.status import DELETABLE_STATUSES
from crowdfund.database.models import Donation, DonationStatus, PaymentMethod

logger = structlog.get_logger(__name__)


@dataclass
class DonationPage:
    """One page of donations plus paging totals."""

    items: List[Donation]
    total: int
    page: int
    limit: int
    total_amount: int = 0

    @property
    def pages(self) -> int:
        return (self.total + self.limit - 1) // self.limit if self.limit else 0


class DonationService:
    """Read side of the donation ledger."""

    async def get_by_transaction_code(self, db: AsyncSession, transaction_code: str) -> Donation:
        donation = await load_donation(db, transaction_code=transaction_code)
        if donation is None:
            raise NotFoundError("Donation not found", transaction_code=transaction_code)
        return donation

    async def _page(
        self,
        db: AsyncSession,
        filters: List[Any],
        page: int,
        limit: int,
    ) -> DonationPage:
        total = (
            await db.execute(select(func.count(Donation.id)).where(*filters))
        ).scalar_one()
        stmt = (
            select(Donation)
            .where(*filters)
            .order_by(Donation.created_at.desc())
            .offset((page - 1) * limit)
            .limit(limit)
            .execution_options(populate_existing=True)
        )
        items = list((await db.execute(stmt)).scalars().all())
        return DonationPage(items=items, total=total, page=page, limit=limit)

    async def _successful_total(self, db: AsyncSession, *filters: Any) -> int:
        stmt = select(func.coalesce(func.sum(Donation.amount), 0)).where(
            Donation.status == DonationStatus.SUCCESSFUL, *filters
        )
        return int((await db.execute(stmt)).scalar_one())

    async def list_by_campaign(
        self,
        db: AsyncSession,
        campaign_id: uuid.UUID,
        status: Optional[DonationStatus] = DonationStatus.SUCCESSFUL,
        include_anonymous: bool = True,
        page: int = 1,
        limit: int = 10,
    ) -> DonationPage:
        """Donations to a campaign; `total_amount` sums all its SUCCESSFUL donations."""
        filters: List[Any] = [Donation.campaign_id == campaign_id]
        if status is not None:
            filters.append(Donation.status == status)
        if not include_anonymous:
            filters.append(Donation.is_anonymous.is_(False))

        result = await self._page(db, filters, page, limit)
        result.total_amount = await self._successful_total(db, Donation.campaign_id == campaign_id)
        return result

    async def list_by_donor(
        self,
        db: AsyncSession,
        donor_id: str,
        status: Optional[DonationStatus] = None,
        page: int = 1,
        limit: int = 10,
    ) -> DonationPage:
        """Donations made by one donor; `total_amount` sums their SUCCESSFUL donations."""
        filters: List[Any] = [Donation.donor_id == donor_id]
        if status is not None:
            filters.append(Donation.status == status)

        result = await self._page(db, filters, page, limit)
        result.total_amount = await self._successful_total(db, Donation.donor_id == donor_id)
        return result

    async def stats(
        self,
        db: AsyncSession,
        campaign_id: Optional[uuid.UUID] = None,
        start_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None,
    ) -> Dict[str, Any]:
        """
        Count and sum donations grouped by status and by payment method.

        The payment-method breakdown only covers SUCCESSFUL donations.
        """
        filters: List[Any] = []
        if campaign_id is not None:
            filters.append(Donation.campaign_id == campaign_id)
        if start_date is not None:
            filters.append(Donation.created_at >= start_date)
        if end_date is not None:
            filters.append(Donation.created_at <= end_date)

        by_status_stmt = (
            select(
                Donation.status,
                func.count(Donation.id).label("donation_count"),
                func.coalesce(func.sum(Donation.amount), 0).label("total_amount"),
            )
            .where(*filters)
            .group_by(Donation.status)
        )
        by_method_stmt = (
            select(
                Donation.payment_method,
                func.count(Donation.id).label("donation_count"),
                func.coalesce(func.sum(Donation.amount), 0).label("total_amount"),
            )
            .where(Donation.status == DonationStatus.SUCCESSFUL, *filters)
            .group_by(Donation.payment_method)
        )

        by_status = {s.value: {"count": 0, "total_amount": 0} for s in DonationStatus}
        for row in (await db.execute(by_status_stmt)).all():
            by_status[row.status.value] = {
                "count": row.donation_count,
                "total_amount": int(row.total_amount),
            }

        by_method = {m.value: {"count": 0, "total_amount": 0} for m in PaymentMethod}
        for row in (await db.execute(by_method_stmt)).all():
            by_method[row.payment_method.value] = {
                "count": row.donation_count,
                "total_amount": int(row.total_amount),
            }

        return {"by_status": by_status, "by_payment_method": by_method}

    async def delete(self, db: AsyncSession, donation_id: uuid.UUID) -> None:
        """
        Delete a PENDING or FAILED donation.

        The status guard is part of the DELETE, so a callback crediting the
        donation at the same moment wins and the delete is refused.

        Raises:
            NotFoundError: If the donation does not exist
            ConflictError: If the donation has been credited or refunded
        """
        result = await db.execute(
            delete(Donation)
            .where(Donation.id == donation_id, Donation.status.in_(list(DELETABLE_STATUSES)))
            .execution_options(synchronize_session=False)
        )
        if result.rowcount:
            await db.commit()
            logger.info("donation_deleted", donation_id=str(donation_id))
            return

        await db.rollback()
        donation = await load_donation(db, donation_id=donation_id)
        if donation is None:
            raise NotFoundError("Donation not found", donation_id=str(donation_id))
        raise ConflictError(
            f"Cannot delete a {donation.status.value} donation",
            donation_id=str(donation_id),
            status=donation.status.value,
        )
