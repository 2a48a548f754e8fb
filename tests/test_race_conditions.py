"""
Race condition tests for concurrent callback deliveries.

Tests that guarded ledger transitions move each donation's money exactly
once, whichever delivery wins.
"""
import asyncio
from typing import Any

import pytest

from crowdfund.core.errors import ConflictError
from crowdfund.core.reconciler import ACK_SUCCESS, DonationReconciler
from crowdfund.database.models import DonationStatus


class TestRaceConditions:
    """Test suite for race condition scenarios."""

    @pytest.mark.race
    @pytest.mark.asyncio
    async def test_concurrent_duplicate_callbacks_credit_once(
        self, create_donation: Any, credit: Any, campaign: Any, load: Any, load_campaign: Any
    ) -> None:
        """
        Ten deliveries of the same verified callback.

        All are acknowledged, the campaign is credited once.
        """
        order = await create_donation(campaign.id, amount=120_000)

        acks = await asyncio.gather(
            *(credit(order.transaction_code, 120_000) for _ in range(10))
        )

        assert all(ack == ACK_SUCCESS for ack in acks)
        assert (await load(order.transaction_code)).status == DonationStatus.SUCCESSFUL
        assert (await load_campaign(campaign.id)).current_fund == 120_000

    @pytest.mark.race
    @pytest.mark.asyncio
    async def test_concurrent_callbacks_for_different_donations(
        self, create_donation: Any, credit: Any, campaign: Any, load_campaign: Any
    ) -> None:
        """Distinct donations to one campaign all land; no increment is lost."""
        amounts = [10_000, 20_000, 30_000, 40_000, 50_000]
        orders = [await create_donation(campaign.id, amount=a) for a in amounts]

        acks = await asyncio.gather(
            *(credit(o.transaction_code, a) for o, a in zip(orders, amounts))
        )

        assert all(ack == ACK_SUCCESS for ack in acks)
        assert (await load_campaign(campaign.id)).current_fund == sum(amounts)

    @pytest.mark.race
    @pytest.mark.asyncio
    async def test_callback_racing_operator_failure(
        self,
        reconciler: DonationReconciler,
        create_donation: Any,
        credit: Any,
        campaign: Any,
        session_factory: Any,
        load: Any,
        load_campaign: Any,
    ) -> None:
        """
        A callback and an operator FAILED override arrive together.

        Exactly one wins, and the campaign fund agrees with the final status.
        """
        order = await create_donation(campaign.id, amount=60_000)

        async def override() -> Any:
            async with session_factory() as session:
                return await reconciler.override_status(
                    session, order.donation_id, DonationStatus.FAILED
                )

        ack, overridden = await asyncio.gather(
            credit(order.transaction_code, 60_000), override(), return_exceptions=True
        )

        assert ack == ACK_SUCCESS
        final = await load(order.transaction_code)
        fund = (await load_campaign(campaign.id)).current_fund
        if final.status == DonationStatus.SUCCESSFUL:
            assert isinstance(overridden, ConflictError)
            assert fund == 60_000
        else:
            assert final.status == DonationStatus.FAILED
            assert fund == 0

    @pytest.mark.race
    @pytest.mark.asyncio
    async def test_concurrent_overrides_to_successful(
        self,
        reconciler: DonationReconciler,
        create_donation: Any,
        campaign: Any,
        session_factory: Any,
        load_campaign: Any,
    ) -> None:
        """Repeated operator overrides converge on one credit."""
        order = await create_donation(campaign.id, amount=45_000)

        async def override() -> Any:
            async with session_factory() as session:
                return await reconciler.override_status(
                    session, order.donation_id, DonationStatus.SUCCESSFUL
                )

        results = await asyncio.gather(*(override() for _ in range(5)))

        assert {r.status for r in results} == {DonationStatus.SUCCESSFUL}
        assert (await load_campaign(campaign.id)).current_fund == 45_000
