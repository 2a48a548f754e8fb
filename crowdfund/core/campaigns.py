"""Campaign management."""
import uuid
from datetime import date
from typing import Any, Dict, List, Optional, Tuple

import structlog
from sqlalchemy import delete, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from crowdfund.core.errors import ConflictError, NotFoundError, ValidationError
from crowdfund.database.models import (
    Campaign,
    CampaignStatus,
    Donation,
    DonationStatus,
    HostType,
)

logger = structlog.get_logger(__name__)

UPDATABLE_FIELDS = frozenset(
    {"name", "description", "campaign_type", "target_amount", "status", "end_date"}
)
NULLABLE_FIELDS = frozenset({"end_date"})

# Donations that keep a campaign from being deleted
RETAINED_STATUSES = (
    DonationStatus.PENDING,
    DonationStatus.SUCCESSFUL,
    DonationStatus.REFUNDED,
)


class CampaignService:
    """
    CRUD for campaigns.

    `current_fund` is never written here; it belongs to the donation ledger.
    """

    async def create(
        self,
        db: AsyncSession,
        *,
        host_id: str,
        name: str,
        description: str,
        campaign_type: str,
        target_amount: int,
        host_type: HostType = HostType.USER,
        status: CampaignStatus = CampaignStatus.PREPARING,
        end_date: Optional[date] = None,
    ) -> Campaign:
        if target_amount <= 0:
            raise ValidationError("Target amount must be positive", target_amount=target_amount)

        campaign = Campaign(
            id=uuid.uuid4(),
            host_id=host_id,
            host_type=host_type,
            name=name,
            description=description,
            campaign_type=campaign_type,
            target_amount=target_amount,
            current_fund=0,
            status=status,
            end_date=end_date,
        )
        db.add(campaign)
        await db.commit()

        logger.info("campaign_created", campaign_id=str(campaign.id), host_id=host_id)
        return campaign

    async def get(self, db: AsyncSession, campaign_id: uuid.UUID) -> Campaign:
        """
        Load a campaign with its current fund.

        Raises:
            NotFoundError: If the campaign does not exist
        """
        stmt = (
            select(Campaign)
            .where(Campaign.id == campaign_id)
            .execution_options(populate_existing=True)
        )
        campaign = (await db.execute(stmt)).scalars().first()
        if campaign is None:
            raise NotFoundError("Campaign not found", campaign_id=str(campaign_id))
        return campaign

    async def list_campaigns(
        self,
        db: AsyncSession,
        status: Optional[CampaignStatus] = None,
        host_id: Optional[str] = None,
        page: int = 1,
        limit: int = 20,
    ) -> Tuple[List[Campaign], int]:
        """Return one page of campaigns, newest first, and the total count."""
        filters = []
        if status is not None:
            filters.append(Campaign.status == status)
        if host_id is not None:
            filters.append(Campaign.host_id == host_id)

        total = (
            await db.execute(select(func.count(Campaign.id)).where(*filters))
        ).scalar_one()
        stmt = (
            select(Campaign)
            .where(*filters)
            .order_by(Campaign.created_at.desc())
            .offset((page - 1) * limit)
            .limit(limit)
            .execution_options(populate_existing=True)
        )
        campaigns = list((await db.execute(stmt)).scalars().all())
        return campaigns, total

    async def update(
        self, db: AsyncSession, campaign_id: uuid.UUID, changes: Dict[str, Any]
    ) -> Campaign:
        """
        Apply a partial update.

        Raises:
            ValidationError: If a field is not updatable or the target is not positive
            NotFoundError: If the campaign does not exist
        """
        unknown = set(changes) - UPDATABLE_FIELDS
        if unknown:
            raise ValidationError(
                f"Fields cannot be updated: {', '.join(sorted(unknown))}",
                fields=sorted(unknown),
            )
        nulls = sorted(f for f, v in changes.items() if v is None and f not in NULLABLE_FIELDS)
        if nulls:
            raise ValidationError(
                f"Fields cannot be null: {', '.join(nulls)}",
                fields=nulls,
            )
        target = changes.get("target_amount")
        if target is not None and (
            not isinstance(target, int) or isinstance(target, bool) or target <= 0
        ):
            raise ValidationError("Target amount must be a positive integer")

        campaign = await self.get(db, campaign_id)
        for field, value in changes.items():
            setattr(campaign, field, value)
        await db.commit()

        logger.info(
            "campaign_updated",
            campaign_id=str(campaign_id),
            fields=sorted(changes),
        )
        return campaign

    async def delete(self, db: AsyncSession, campaign_id: uuid.UUID) -> None:
        """
        Delete a campaign and its failed donations.

        Raises:
            NotFoundError: If the campaign does not exist
            ConflictError: If donations that are or may become money remain
        """
        campaign = await self.get(db, campaign_id)

        retained = (
            await db.execute(
                select(func.count(Donation.id)).where(
                    Donation.campaign_id == campaign_id,
                    Donation.status.in_(RETAINED_STATUSES),
                )
            )
        ).scalar_one()
        if retained:
            raise ConflictError(
                "Campaign has donations and cannot be deleted",
                campaign_id=str(campaign_id),
                donations=retained,
            )

        await db.execute(
            delete(Donation).where(
                Donation.campaign_id == campaign_id,
                Donation.status == DonationStatus.FAILED,
            )
        )
        await db.delete(campaign)
        await db.commit()

        logger.info("campaign_deleted", campaign_id=str(campaign_id))
