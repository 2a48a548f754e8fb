"""
Integration tests for refunds: gateway first, ledger second.
"""
import asyncio
from typing import Any

import pytest

from crowdfund.core.errors import ConflictError, GatewayError, NotFoundError, ValidationError
from crowdfund.core.reconciler import DonationReconciler
from crowdfund.database.models import DonationStatus


async def _paid_donation(create_donation: Any, credit: Any, campaign: Any, amount: int = 80_000) -> Any:
    order = await create_donation(campaign.id, amount=amount)
    await credit(order.transaction_code, amount, zp_trans_id=240101000777)
    return order


class TestRefund:
    """Test suite for operator refunds."""

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_refund_success(
        self,
        reconciler: DonationReconciler,
        create_donation: Any,
        credit: Any,
        campaign: Any,
        test_db: Any,
        fake_zalopay: Any,
        load_campaign: Any,
    ) -> None:
        order = await _paid_donation(create_donation, credit, campaign)
        assert (await load_campaign(campaign.id)).current_fund == 80_000

        donation = await reconciler.refund(test_db, "240101000777", 80_000, "Campaign cancelled")

        assert donation.status == DonationStatus.REFUNDED
        assert (await load_campaign(campaign.id)).current_fund == 0

        [form] = fake_zalopay.calls("refund")
        assert form["zp_trans_id"] == "240101000777"
        assert form["amount"] == "80000"
        assert form["description"] == "Campaign cancelled"
        assert form["m_refund_id"].endswith(f"_2553_{order.donation_id.hex}")

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_partial_refund_is_rejected(
        self,
        reconciler: DonationReconciler,
        create_donation: Any,
        credit: Any,
        campaign: Any,
        test_db: Any,
        fake_zalopay: Any,
    ) -> None:
        await _paid_donation(create_donation, credit, campaign)

        with pytest.raises(ValidationError, match="full refunds"):
            await reconciler.refund(test_db, "240101000777", 40_000)
        assert fake_zalopay.calls("refund") == []

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_refund_unknown_transaction(
        self, reconciler: DonationReconciler, test_db: Any
    ) -> None:
        with pytest.raises(NotFoundError):
            await reconciler.refund(test_db, "999999", 10_000)

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_gateway_refusal_keeps_donation_successful(
        self,
        reconciler: DonationReconciler,
        create_donation: Any,
        credit: Any,
        campaign: Any,
        test_db: Any,
        fake_zalopay: Any,
        load: Any,
        load_campaign: Any,
    ) -> None:
        order = await _paid_donation(create_donation, credit, campaign)
        fake_zalopay.responses["refund"] = {
            "return_code": 2,
            "return_message": "Hoàn tiền thất bại",
            "sub_return_message": "Giao dịch đã được hoàn tiền",
        }

        with pytest.raises(GatewayError) as exc_info:
            await reconciler.refund(test_db, "240101000777", 80_000)

        assert not exc_info.value.retryable
        assert exc_info.value.return_code == 2
        assert (await load(order.transaction_code)).status == DonationStatus.SUCCESSFUL
        assert (await load_campaign(campaign.id)).current_fund == 80_000

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_processing_refund_keeps_donation_successful(
        self,
        reconciler: DonationReconciler,
        create_donation: Any,
        credit: Any,
        campaign: Any,
        test_db: Any,
        fake_zalopay: Any,
        load: Any,
    ) -> None:
        order = await _paid_donation(create_donation, credit, campaign)
        fake_zalopay.responses["refund"] = {"return_code": 3, "return_message": "processing"}

        with pytest.raises(GatewayError) as exc_info:
            await reconciler.refund(test_db, "240101000777", 80_000)

        assert exc_info.value.retryable
        assert (await load(order.transaction_code)).status == DonationStatus.SUCCESSFUL

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_repeated_refund_is_idempotent(
        self,
        reconciler: DonationReconciler,
        create_donation: Any,
        credit: Any,
        campaign: Any,
        test_db: Any,
        fake_zalopay: Any,
        load_campaign: Any,
    ) -> None:
        await _paid_donation(create_donation, credit, campaign)

        await reconciler.refund(test_db, "240101000777", 80_000)
        donation = await reconciler.refund(test_db, "240101000777", 80_000)

        assert donation.status == DonationStatus.REFUNDED
        assert len(fake_zalopay.calls("refund")) == 1
        assert (await load_campaign(campaign.id)).current_fund == 0

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_override_to_refunded_calls_gateway(
        self,
        reconciler: DonationReconciler,
        create_donation: Any,
        credit: Any,
        campaign: Any,
        test_db: Any,
        fake_zalopay: Any,
        load_campaign: Any,
    ) -> None:
        order = await _paid_donation(create_donation, credit, campaign)

        donation = await reconciler.override_status(
            test_db, order.donation_id, DonationStatus.REFUNDED, reason="Duplicate payment"
        )

        assert donation.status == DonationStatus.REFUNDED
        assert fake_zalopay.calls("refund")[0]["description"] == "Duplicate payment"
        assert (await load_campaign(campaign.id)).current_fund == 0

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_pending_donation_cannot_be_refunded(
        self,
        reconciler: DonationReconciler,
        create_donation: Any,
        campaign: Any,
        test_db: Any,
        fake_zalopay: Any,
    ) -> None:
        order = await create_donation(campaign.id, amount=80_000)

        with pytest.raises(ConflictError):
            await reconciler.override_status(test_db, order.donation_id, DonationStatus.REFUNDED)
        assert fake_zalopay.calls("refund") == []

    @pytest.mark.race
    @pytest.mark.asyncio
    async def test_concurrent_refunds_debit_once(
        self,
        reconciler: DonationReconciler,
        create_donation: Any,
        credit: Any,
        campaign: Any,
        session_factory: Any,
        load: Any,
        load_campaign: Any,
    ) -> None:
        order = await _paid_donation(create_donation, credit, campaign)

        async def refund() -> Any:
            async with session_factory() as session:
                return await reconciler.refund(session, "240101000777", 80_000)

        results = await asyncio.gather(*(refund() for _ in range(5)), return_exceptions=True)

        assert all(not isinstance(r, BaseException) for r in results), results
        assert {r.status for r in results} == {DonationStatus.REFUNDED}
        assert (await load(order.transaction_code)).status == DonationStatus.REFUNDED
        assert (await load_campaign(campaign.id)).current_fund == 0
