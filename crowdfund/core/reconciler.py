"""
Donation ledger reconciler.

Orchestrates the donation lifecycle against the payment gateways:
1. Validate input and persist a PENDING donation carrying a fresh transaction code
2. Submit the signed order to the gateway
3. Verify the signed callback and credit the campaign exactly once
4. Apply operator overrides and refunds (gateway first, ledger second)
5. Merge local and gateway views for status queries
"""
import json
import secrets
import time
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional, Tuple, Union

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from crowdfund.config import GatewayConfig
from crowdfund.core.errors import (
    AmountMismatchError,
    ConflictError,
    GatewayError,
    NotFoundError,
    ValidationError,
)
from crowdfund.core.ledger import (
    LedgerOutcome,
    credit_donation,
    fail_donation,
    load_donation,
    refund_donation,
)
from crowdfund.core.status import ensure_transition
from crowdfund.database.models import (
    Campaign,
    Donation,
    DonationEvent,
    DonationStatus,
    PaymentMethod,
)
from crowdfund.integrations.stripe_client import StripeClient
from crowdfund.integrations.zalopay_client import (
    RETURN_PROCESSING,
    RETURN_SUCCESS,
    ZaloPayClient,
)
from crowdfund.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

# ZaloPay dates transaction codes in Vietnam time (UTC+7, no DST)
GATEWAY_TZ = timezone(timedelta(hours=7))

DONOR_ERROR_MESSAGE = "Payment could not be completed, please retry"


def generate_transaction_code(now: Optional[datetime] = None) -> str:
    """Return a ``yymmdd_<16 hex>`` code; the date prefix is required by the gateway."""
    now = now or datetime.now(timezone.utc)
    return f"{now.astimezone(GATEWAY_TZ):%y%m%d}_{secrets.token_hex(8)}"


@dataclass(frozen=True)
class CallbackAck:
    """Acknowledgement returned to the gateway for every callback."""

    return_code: int
    return_message: str

    def as_dict(self) -> Dict[str, Any]:
        return {"return_code": self.return_code, "return_message": self.return_message}


ACK_SUCCESS = CallbackAck(1, "success")
ACK_NOT_FOUND = CallbackAck(0, "donation not found")
ACK_REJECTED = CallbackAck(0, "rejected")
ACK_ERROR = CallbackAck(0, "processing error")
# One message for missing, unverifiable and unparsable payloads
ACK_INVALID = CallbackAck(-1, "invalid callback")


@dataclass(frozen=True)
class OrderResult:
    """Gateway order handle plus the local donation it belongs to."""

    donation_id: uuid.UUID
    transaction_code: str
    order_url: Optional[str]
    zp_trans_token: Optional[str]
    order_token: Optional[str]
    return_message: Optional[str]


@dataclass(frozen=True)
class CardPaymentResult:
    """PaymentIntent handle plus the local donation it belongs to."""

    donation_id: uuid.UUID
    transaction_code: str
    payment_intent_id: str
    client_secret: Optional[str]
    status: str


@dataclass(frozen=True)
class StatusView:
    """Local donation state merged with the gateway's view of the same order."""

    donation: Donation
    gateway: Dict[str, Any]


def _parse_amount(value: Any) -> int:
    """Accept an integer or a string of ASCII digits; floats and booleans never match."""
    if isinstance(value, int) and not isinstance(value, bool):
        return value
    if isinstance(value, str) and value.isascii() and value.isdigit():
        return int(value)
    raise ValueError(f"Invalid amount: {value!r}")


def _classify(outcome: LedgerOutcome, expected_amount: Optional[int] = None) -> str:
    if outcome.applied:
        return "applied"
    if outcome.donation is None:
        return "not_found"
    if outcome.donation.status != DonationStatus.PENDING:
        return "duplicate"
    if expected_amount is not None and outcome.donation.amount != expected_amount:
        return "mismatch"
    return "error"


class DonationReconciler:
    """
    Reconciles donations with the mobile-wallet and card gateways.

    All money movement goes through the guarded ledger primitives, so a
    redelivered callback, a concurrent override or a repeated refund can
    never move a campaign's fund twice.
    """

    def __init__(
        self,
        config: GatewayConfig,
        zalopay_client: Optional[ZaloPayClient] = None,
        stripe_client: Optional[StripeClient] = None,
    ):
        """
        Initialize reconciler.

        Args:
            config: Mobile-wallet gateway configuration
            zalopay_client: Optional ZaloPay client (built from `config` otherwise)
            stripe_client: Optional Stripe client; card operations fail without one
        """
        self.config = config
        self.zalopay = zalopay_client or ZaloPayClient(config)
        self.stripe = stripe_client

        logger.info("donation_reconciler_initialized", app_id=config.app_id)

    async def close(self) -> None:
        """Release gateway connections."""
        await self.zalopay.close()

    def _validate_amount(self, amount: int, currency: Optional[str] = None) -> None:
        if not isinstance(amount, int) or isinstance(amount, bool) or amount <= 0:
            raise ValidationError("Amount must be a positive integer", amount=amount)
        if currency is None or currency.upper() == self.config.currency:
            if amount < self.config.min_amount or amount > self.config.max_amount:
                raise ValidationError(
                    f"Amount must be between {self.config.min_amount} and {self.config.max_amount}",
                    amount=amount,
                )

    async def _get_campaign(self, db: AsyncSession, campaign_id: uuid.UUID) -> Campaign:
        campaign = await db.get(Campaign, campaign_id)
        if campaign is None:
            raise NotFoundError("Campaign not found", campaign_id=str(campaign_id))
        return campaign

    async def _create_pending_donation(
        self,
        db: AsyncSession,
        campaign: Campaign,
        donor_id: str,
        amount: int,
        currency: str,
        message: Optional[str],
        is_anonymous: bool,
        payment_method: PaymentMethod,
        correlation_id: uuid.UUID,
    ) -> Donation:
        """Persist the PENDING donation and commit before any gateway call."""
        donation = Donation(
            id=uuid.uuid4(),
            donor_id=donor_id,
            campaign_id=campaign.id,
            amount=amount,
            currency=currency.upper(),
            message=message,
            payment_method=payment_method,
            transaction_code=generate_transaction_code(),
            status=DonationStatus.PENDING,
            is_anonymous=is_anonymous,
        )
        db.add(donation)
        db.add(
            DonationEvent(
                donation_id=donation.id,
                event_type="donation.created",
                event_data={
                    "amount": amount,
                    "currency": donation.currency,
                    "payment_method": payment_method.value,
                    "transaction_code": donation.transaction_code,
                },
                correlation_id=correlation_id,
                created_at=datetime.now(timezone.utc),
            )
        )
        await db.commit()

        logger.info(
            "donation_record_created",
            correlation_id=str(correlation_id),
            donation_id=str(donation.id),
            transaction_code=donation.transaction_code,
            campaign_id=str(campaign.id),
            amount=amount,
        )
        return donation

    # ------------------------------------------------------------------
    # Mobile wallet
    # ------------------------------------------------------------------

    async def create_order(
        self,
        db: AsyncSession,
        *,
        amount: int,
        donor_id: str,
        campaign_id: uuid.UUID,
        donor_name: str,
        message: Optional[str] = None,
        is_anonymous: bool = False,
        redirect_url: Optional[str] = None,
        callback_url: Optional[str] = None,
    ) -> OrderResult:
        """
        Create a PENDING donation and a matching gateway order.

        Flow:
        1. Validate input and campaign
        2. Persist the PENDING donation with a new transaction code
        3. Build and sign the order
        4. Call the gateway; any failure marks the donation FAILED

        Raises:
            ValidationError: If the amount or donor fields are invalid
            NotFoundError: If the campaign does not exist
            GatewayTimeoutError: If the gateway did not answer in time
            GatewayError: On transport failure or gateway rejection
        """
        correlation_id = uuid.uuid4()

        if not donor_id or not donor_name:
            raise ValidationError("donor_id and donor_name are required")
        self._validate_amount(amount)
        campaign = await self._get_campaign(db, campaign_id)

        description = message or f"Donation to {campaign.name}"
        donation = await self._create_pending_donation(
            db,
            campaign=campaign,
            donor_id=donor_id,
            amount=amount,
            currency=self.config.currency,
            message=description,
            is_anonymous=is_anonymous,
            payment_method=PaymentMethod.ZALOPAY,
            correlation_id=correlation_id,
        )

        order = self.zalopay.build_order(
            app_trans_id=donation.transaction_code,
            app_user=donor_name,
            amount=amount,
            description=description,
            embed_data={
                "redirecturl": redirect_url or "",
                "donation_id": str(donation.id),
                "campaign_id": str(campaign.id),
            },
            items=[
                {
                    "itemid": str(donation.id),
                    "itemname": f"Donation: {campaign.name}",
                    "itemprice": amount,
                    "itemquantity": 1,
                }
            ],
            callback_url=callback_url,
        )

        try:
            response = await self.zalopay.create_order(order)
        except GatewayError as e:
            await fail_donation(
                db,
                donation_id=donation.id,
                reason=e.reason or str(e),
                correlation_id=correlation_id,
                source="create_order",
            )
            metrics.record_donation_order(PaymentMethod.ZALOPAY.value, "failed", amount)
            logger.error(
                "zalopay_order_failed",
                correlation_id=str(correlation_id),
                transaction_code=donation.transaction_code,
                error=str(e),
            )
            raise

        if response.get("return_code") != RETURN_SUCCESS:
            reason = response.get("sub_return_message") or response.get("return_message")
            await fail_donation(
                db,
                donation_id=donation.id,
                reason=reason,
                correlation_id=correlation_id,
                source="create_order",
            )
            metrics.record_donation_order(PaymentMethod.ZALOPAY.value, "rejected", amount)
            logger.warning(
                "zalopay_order_rejected",
                correlation_id=str(correlation_id),
                transaction_code=donation.transaction_code,
                return_code=response.get("return_code"),
                reason=reason,
            )
            raise GatewayError(
                f"ZaloPay rejected the order: {reason}",
                return_code=response.get("return_code"),
                reason=reason,
                retryable=False,
            )

        metrics.record_donation_order(PaymentMethod.ZALOPAY.value, "created", amount)
        logger.info(
            "zalopay_order_created",
            correlation_id=str(correlation_id),
            transaction_code=donation.transaction_code,
            donation_id=str(donation.id),
        )
        return OrderResult(
            donation_id=donation.id,
            transaction_code=donation.transaction_code,
            order_url=response.get("order_url"),
            zp_trans_token=response.get("zp_trans_token"),
            order_token=response.get("order_token"),
            return_message=response.get("return_message"),
        )

    async def handle_callback(
        self, db: AsyncSession, data: Optional[str], mac: Optional[str]
    ) -> CallbackAck:
        """
        Verify a gateway callback and credit the donation exactly once.

        Never raises: every outcome, including internal failures, is
        turned into an acknowledgement for the gateway.
        """
        start = time.monotonic()
        outcome = "error"
        try:
            ack, outcome = await self._reconcile_callback(db, data, mac)
            return ack
        except Exception as e:
            logger.exception("zalopay_callback_processing_failed", error=str(e))
            return ACK_ERROR
        finally:
            metrics.record_callback(ZaloPayClient.GATEWAY, outcome, time.monotonic() - start)

    async def _reconcile_callback(
        self, db: AsyncSession, data: Optional[str], mac: Optional[str]
    ) -> Tuple[CallbackAck, str]:
        if not data or not mac:
            logger.warning("zalopay_callback_missing_fields", has_data=bool(data), has_mac=bool(mac))
            return ACK_INVALID, "invalid"

        # Nothing in `data` is read before the MAC verifies
        if not self.zalopay.verify_callback(data, mac):
            logger.warning("zalopay_callback_mac_mismatch", mac_prefix=mac[:10])
            return ACK_INVALID, "invalid"

        try:
            payload = json.loads(data)
            transaction_code = str(payload["app_trans_id"])
            amount = _parse_amount(payload["amount"])
            zp_trans_id = str(payload["zp_trans_id"])
        except (ValueError, TypeError, KeyError) as e:
            logger.warning("zalopay_callback_unparsable", error=str(e))
            return ACK_INVALID, "invalid"

        correlation_id = uuid.uuid4()
        log = logger.bind(
            correlation_id=str(correlation_id),
            transaction_code=transaction_code,
            zp_trans_id=zp_trans_id,
        )
        log.info("zalopay_callback_verified", amount=amount)

        result = await credit_donation(
            db,
            transaction_code=transaction_code,
            expected_amount=amount,
            record_gateway_transaction_id=zp_trans_id,
            correlation_id=correlation_id,
            source="zalopay_callback",
        )
        outcome = _classify(result, expected_amount=amount)

        if outcome == "applied":
            return ACK_SUCCESS, outcome
        if outcome == "not_found":
            log.warning("zalopay_callback_unknown_transaction")
            return ACK_NOT_FOUND, outcome
        if outcome == "duplicate":
            if result.donation.status == DonationStatus.FAILED:
                # Paid at the gateway after being failed locally; needs an operator
                log.error("zalopay_callback_for_failed_donation", donation_id=str(result.donation.id))
            else:
                log.info("zalopay_callback_duplicate", status=result.donation.status.value)
            return ACK_SUCCESS, outcome
        if outcome == "mismatch":
            error = AmountMismatchError(
                "Callback amount does not match donation",
                expected=result.donation.amount,
                received=amount,
            )
            log.error("zalopay_callback_amount_mismatch", error=error.message, **error.context)
            return ACK_REJECTED, outcome

        log.error("zalopay_callback_not_applied", status=result.donation.status.value)
        return ACK_ERROR, outcome

    async def query_status(self, db: AsyncSession, transaction_code: str) -> StatusView:
        """
        Return the local donation merged with a live query to its own gateway.

        Raises:
            NotFoundError: If no donation carries `transaction_code`
            GatewayError: If the gateway query fails
        """
        donation = await load_donation(db, transaction_code=transaction_code)
        if donation is None:
            raise NotFoundError("Donation not found", transaction_code=transaction_code)

        if donation.payment_method == PaymentMethod.STRIPE:
            gateway = await self._query_card_gateway(donation)
        else:
            gateway = await self.zalopay.query_order(transaction_code)
        return StatusView(donation=donation, gateway=gateway)

    async def _query_card_gateway(self, donation: Donation) -> Dict[str, Any]:
        if not donation.gateway_transaction_id:
            return {"status": None}
        intent = await self._require_stripe().retrieve_payment_intent(donation.gateway_transaction_id)
        return {
            "payment_intent_id": intent["id"],
            "status": intent["status"],
            "amount": intent["amount"],
            "currency": intent["currency"],
        }

    # ------------------------------------------------------------------
    # Operator actions
    # ------------------------------------------------------------------

    async def override_status(
        self,
        db: AsyncSession,
        donation_id: uuid.UUID,
        target: DonationStatus,
        reason: Optional[str] = None,
    ) -> Donation:
        """
        Force a donation's status.

        Overriding to the current status is a no-op. SUCCESSFUL credits the
        campaign, FAILED only changes the donation, REFUNDED refunds at the
        gateway before debiting the campaign.

        Raises:
            NotFoundError: If the donation does not exist
            ConflictError: If the transition is not allowed
        """
        donation = await load_donation(db, donation_id=donation_id)
        if donation is None:
            raise NotFoundError("Donation not found", donation_id=str(donation_id))

        if donation.status == target:
            logger.info("donation_override_noop", donation_id=str(donation_id), status=target.value)
            return donation

        ensure_transition(donation.status, target)

        if target == DonationStatus.REFUNDED:
            return await self._refund(db, donation, reason or "Operator refund")

        if target == DonationStatus.SUCCESSFUL:
            result = await credit_donation(db, donation_id=donation_id, source="operator_override")
        else:
            result = await fail_donation(
                db, donation_id=donation_id, reason=reason, source="operator_override"
            )

        if not result.applied:
            return self._settled_or_conflict(result.donation, target)
        logger.info(
            "donation_status_overridden",
            donation_id=str(donation_id),
            target=target.value,
        )
        return result.donation

    async def refund(
        self,
        db: AsyncSession,
        gateway_transaction_id: str,
        amount: int,
        description: Optional[str] = None,
    ) -> Donation:
        """
        Refund a successful donation in full.

        Raises:
            NotFoundError: If no donation carries `gateway_transaction_id`
            ValidationError: If `amount` is not the donation amount
            ConflictError: If the donation is not SUCCESSFUL
            GatewayError: If the gateway refused or is still processing the refund
        """
        donation = await load_donation(db, gateway_transaction_id=gateway_transaction_id)
        if donation is None:
            raise NotFoundError(
                "Donation not found", gateway_transaction_id=gateway_transaction_id
            )
        if amount != donation.amount:
            raise ValidationError(
                "Only full refunds are supported",
                amount=amount,
                donation_amount=donation.amount,
            )
        return await self._refund(db, donation, description or "Donation refund")

    async def _refund(self, db: AsyncSession, donation: Donation, description: str) -> Donation:
        if donation.status == DonationStatus.REFUNDED:
            return donation
        ensure_transition(donation.status, DonationStatus.REFUNDED)
        if not donation.gateway_transaction_id:
            raise ConflictError(
                "Donation has no gateway transaction to refund",
                donation_id=str(donation.id),
            )

        # End the read transaction; the gateway call may take seconds
        await db.commit()

        if donation.payment_method == PaymentMethod.STRIPE:
            refund_id = await self._refund_card(donation)
        else:
            refund_id = await self._refund_wallet(donation, description)

        result = await refund_donation(
            db,
            donation_id=donation.id,
            refund_id=refund_id,
            source=f"{donation.payment_method.value.lower()}_refund",
        )
        if not result.applied:
            return self._settled_or_conflict(result.donation, DonationStatus.REFUNDED)
        return result.donation

    async def _refund_wallet(self, donation: Donation, description: str) -> str:
        today = datetime.now(GATEWAY_TZ)
        # Stable per donation and day so the gateway deduplicates repeats
        m_refund_id = f"{today:%y%m%d}_{self.config.app_id}_{donation.id.hex}"
        response = await self.zalopay.refund(
            m_refund_id=m_refund_id,
            zp_trans_id=donation.gateway_transaction_id,
            amount=donation.amount,
            description=description,
        )
        return_code = response.get("return_code")
        reason = response.get("sub_return_message") or response.get("return_message")
        if return_code == RETURN_SUCCESS:
            return m_refund_id
        if return_code == RETURN_PROCESSING:
            logger.warning("zalopay_refund_processing", m_refund_id=m_refund_id)
            raise GatewayError(
                "Refund is still processing at the gateway",
                return_code=return_code,
                reason=reason,
                retryable=True,
            )
        logger.error(
            "zalopay_refund_failed",
            m_refund_id=m_refund_id,
            return_code=return_code,
            reason=reason,
        )
        raise GatewayError(
            f"ZaloPay refused the refund: {reason}",
            return_code=return_code,
            reason=reason,
            retryable=False,
        )

    async def _refund_card(self, donation: Donation) -> str:
        refund = await self._require_stripe().create_refund(
            payment_intent_id=donation.gateway_transaction_id,
            idempotency_key=f"refund_{donation.transaction_code}",
        )
        if refund["status"] in ("failed", "canceled"):
            raise GatewayError(
                "Stripe refused the refund",
                reason=refund["status"],
                retryable=False,
            )
        return refund["id"]

    @staticmethod
    def _settled_or_conflict(donation: Optional[Donation], target: DonationStatus) -> Donation:
        """A concurrent writer either reached `target` already or moved elsewhere."""
        if donation is not None and donation.status == target:
            return donation
        raise ConflictError(
            f"Donation changed concurrently, cannot set {target.value}",
            current=donation.status.value if donation else None,
        )

    # ------------------------------------------------------------------
    # Card processor
    # ------------------------------------------------------------------

    def _require_stripe(self) -> StripeClient:
        if self.stripe is None:
            raise GatewayError("Card payments are not configured", retryable=False)
        return self.stripe

    def verify_card_event(self, payload: bytes, signature_header: Optional[str]) -> Any:
        """
        Verify and parse a Stripe webhook delivery.

        Raises:
            SignatureError: If the signature does not verify
        """
        return self._require_stripe().construct_event(payload, signature_header)

    async def create_card_payment(
        self,
        db: AsyncSession,
        *,
        amount: int,
        donor_id: str,
        campaign_id: uuid.UUID,
        currency: Optional[str] = None,
        message: Optional[str] = None,
        is_anonymous: bool = False,
    ) -> CardPaymentResult:
        """
        Create a PENDING card donation and its PaymentIntent.

        The transaction code is both the PaymentIntent metadata used to match
        webhooks and the Stripe idempotency key.
        """
        stripe_client = self._require_stripe()
        correlation_id = uuid.uuid4()
        currency = (currency or self.config.currency).upper()

        if not donor_id:
            raise ValidationError("donor_id is required")
        self._validate_amount(amount, currency)
        campaign = await self._get_campaign(db, campaign_id)

        donation = await self._create_pending_donation(
            db,
            campaign=campaign,
            donor_id=donor_id,
            amount=amount,
            currency=currency,
            message=message,
            is_anonymous=is_anonymous,
            payment_method=PaymentMethod.STRIPE,
            correlation_id=correlation_id,
        )

        try:
            intent = await stripe_client.create_payment_intent(
                amount=amount,
                currency=currency,
                idempotency_key=donation.transaction_code,
                metadata={
                    "transaction_code": donation.transaction_code,
                    "donation_id": str(donation.id),
                    "campaign_id": str(campaign.id),
                    "donor_id": donor_id,
                },
            )
        except GatewayError as e:
            await fail_donation(
                db,
                donation_id=donation.id,
                reason=e.reason or str(e),
                correlation_id=correlation_id,
                source="create_payment_intent",
            )
            metrics.record_donation_order(PaymentMethod.STRIPE.value, "failed", amount)
            raise

        donation.gateway_transaction_id = intent["id"]
        await db.commit()

        metrics.record_donation_order(PaymentMethod.STRIPE.value, "created", amount)
        logger.info(
            "card_payment_created",
            correlation_id=str(correlation_id),
            donation_id=str(donation.id),
            payment_intent_id=intent["id"],
        )
        return CardPaymentResult(
            donation_id=donation.id,
            transaction_code=donation.transaction_code,
            payment_intent_id=intent["id"],
            client_secret=intent["client_secret"],
            status=intent["status"],
        )

    async def handle_card_event(self, db: AsyncSession, event: Union[Dict[str, Any], Any]) -> str:
        """
        Apply a verified Stripe event to the ledger.

        Returns:
            str: Outcome (applied, duplicate, not_found, mismatch, ignored)
        """
        start = time.monotonic()
        event_type = event["type"]
        obj = event["data"]["object"]
        outcome = "ignored"

        try:
            if event_type == "payment_intent.succeeded":
                amount = obj.get("amount_received") or obj["amount"]
                result = await credit_donation(
                    db,
                    **self._card_selector(obj, obj["id"]),
                    expected_amount=amount,
                    record_gateway_transaction_id=obj["id"],
                    source="stripe_webhook",
                )
                outcome = _classify(result, expected_amount=amount)
                if outcome == "mismatch":
                    logger.error(
                        "stripe_event_amount_mismatch",
                        payment_intent_id=obj["id"],
                        expected=result.donation.amount,
                        received=amount,
                    )

            elif event_type == "payment_intent.payment_failed":
                error = obj.get("last_payment_error") or {}
                result = await fail_donation(
                    db,
                    **self._card_selector(obj, obj["id"]),
                    reason=error.get("message") or "Card payment failed",
                    source="stripe_webhook",
                )
                outcome = _classify(result)

            elif event_type == "charge.refunded":
                if not obj.get("refunded"):
                    logger.warning("stripe_partial_refund_ignored", charge_id=obj.get("id"))
                elif obj.get("payment_intent"):
                    result = await refund_donation(
                        db,
                        gateway_transaction_id=obj["payment_intent"],
                        refund_id=obj.get("id"),
                        source="stripe_webhook",
                    )
                    outcome = _classify(result)
                    if outcome == "error":
                        # Refund delivered before the success event
                        logger.error(
                            "stripe_refund_for_pending_donation",
                            payment_intent_id=obj["payment_intent"],
                        )

            logger.info(
                "stripe_event_processed",
                event_id=event.get("id"),
                event_type=event_type,
                outcome=outcome,
            )
            return outcome
        finally:
            metrics.record_callback(StripeClient.GATEWAY, outcome, time.monotonic() - start)

    @staticmethod
    def _card_selector(obj: Dict[str, Any], payment_intent_id: str) -> Dict[str, Any]:
        transaction_code = (obj.get("metadata") or {}).get("transaction_code")
        if transaction_code:
            return {"transaction_code": transaction_code}
        return {"gateway_transaction_id": payment_intent_id}
