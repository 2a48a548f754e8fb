"""
Ledger audit comparing campaign funds with their successful donations.

Detects campaigns whose running `current_fund` differs from the sum of
their SUCCESSFUL donation amounts. Balances are reported, never rewritten:
a discrepancy means a ledger split an operator has to investigate.
"""
import time
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

import structlog
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from crowdfund.core.status import CREDITED_STATUSES
from crowdfund.database.models import Campaign, Donation, LedgerAudit
from crowdfund.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

# Stored details are capped; the returned result always carries all of them
MAX_STORED_DISCREPANCIES = 100


class LedgerAuditError(Exception):
    """Raised when an audit run fails."""

    pass


class LedgerAuditor:
    """Recomputes campaign totals and reports discrepancies."""

    async def _expected_totals(
        self, db: AsyncSession, campaign_id: Optional[uuid.UUID]
    ) -> Dict[uuid.UUID, int]:
        stmt = (
            select(
                Donation.campaign_id,
                func.coalesce(func.sum(Donation.amount), 0).label("total"),
            )
            .where(Donation.status.in_(list(CREDITED_STATUSES)))
            .group_by(Donation.campaign_id)
        )
        if campaign_id is not None:
            stmt = stmt.where(Donation.campaign_id == campaign_id)
        return {row.campaign_id: int(row.total) for row in (await db.execute(stmt)).all()}

    async def _find_discrepancies(
        self, db: AsyncSession, campaign_id: Optional[uuid.UUID]
    ) -> Tuple[int, List[Dict[str, Any]]]:
        expected = await self._expected_totals(db, campaign_id)

        stmt = select(Campaign.id, Campaign.name, Campaign.current_fund)
        if campaign_id is not None:
            stmt = stmt.where(Campaign.id == campaign_id)
        campaigns = (await db.execute(stmt)).all()

        discrepancies = []
        for campaign in campaigns:
            expected_fund = expected.get(campaign.id, 0)
            if expected_fund != campaign.current_fund:
                discrepancies.append({
                    "campaign_id": str(campaign.id),
                    "campaign_name": campaign.name,
                    "current_fund": campaign.current_fund,
                    "expected_fund": expected_fund,
                    "difference": campaign.current_fund - expected_fund,
                })

        return len(campaigns), discrepancies

    async def audit(
        self, db: AsyncSession, campaign_id: Optional[uuid.UUID] = None
    ) -> Dict[str, Any]:
        """
        Audit one campaign, or all of them.

        Args:
            db: Database session
            campaign_id: Restrict the audit to one campaign

        Returns:
            Dict[str, Any]: Audit results, including every discrepancy

        Raises:
            LedgerAuditError: If the audit could not complete
        """
        start = time.monotonic()
        logger.info("ledger_audit_started", campaign_id=str(campaign_id) if campaign_id else None)

        record = LedgerAudit(
            status="in_progress",
            started_at=datetime.now(timezone.utc),
        )
        db.add(record)
        await db.commit()

        try:
            campaigns_checked, discrepancies = await self._find_discrepancies(db, campaign_id)
        except Exception as e:
            logger.error("ledger_audit_failed", audit_id=record.id, error=str(e))
            await db.rollback()
            record.status = "failed"
            record.completed_at = datetime.now(timezone.utc)
            record.details = {"error": str(e)}
            db.add(record)
            await db.commit()
            raise LedgerAuditError(f"Ledger audit failed: {str(e)}") from e

        discrepancy_amount = sum(abs(d["difference"]) for d in discrepancies)
        record.status = "completed"
        record.campaigns_checked = campaigns_checked
        record.discrepancy_count = len(discrepancies)
        record.discrepancy_amount = discrepancy_amount
        record.completed_at = datetime.now(timezone.utc)
        record.details = {
            "campaign_id": str(campaign_id) if campaign_id else None,
            "discrepancies": discrepancies[:MAX_STORED_DISCREPANCIES],
        }
        await db.commit()

        duration = time.monotonic() - start
        metrics.set_audit_metrics(len(discrepancies), discrepancy_amount, duration)

        if discrepancies:
            logger.critical(
                "ledger_discrepancies_detected",
                audit_id=record.id,
                discrepancy_count=len(discrepancies),
                discrepancy_amount=discrepancy_amount,
            )
        logger.info(
            "ledger_audit_completed",
            audit_id=record.id,
            campaigns_checked=campaigns_checked,
            discrepancy_count=len(discrepancies),
            duration_seconds=round(duration, 3),
        )

        return {
            "audit_id": record.id,
            "status": record.status,
            "campaigns_checked": campaigns_checked,
            "discrepancy_count": len(discrepancies),
            "discrepancy_amount": discrepancy_amount,
            "discrepancies": discrepancies,
            "started_at": record.started_at,
            "completed_at": record.completed_at,
        }
