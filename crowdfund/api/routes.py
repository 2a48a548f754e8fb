"""
API routes for donations, campaigns and operations.
"""
import uuid
from datetime import datetime
from functools import lru_cache
from typing import Any, Dict, Optional, Tuple

import structlog
from fastapi import APIRouter, Depends, Header, HTTPException, Query, Request, Response, status
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from sqlalchemy.ext.asyncio import AsyncSession

from crowdfund.config import get_settings
from crowdfund.core.audit import LedgerAuditError, LedgerAuditor
from crowdfund.core.campaigns import CampaignService
from crowdfund.core.donations import DonationPage, DonationService
from crowdfund.core.errors import CrowdfundError, GatewayError
from crowdfund.core.reconciler import DONOR_ERROR_MESSAGE, DonationReconciler
from crowdfund.database.connection import get_db
from crowdfund.database.models import CampaignStatus, DonationStatus, HostType
from crowdfund.integrations.stripe_client import StripeClient
from crowdfund.monitoring.health import HealthCheck

from .auth import Principal, get_current_principal, require_operator
from .schemas import (
    AuditResponse,
    CallbackResponse,
    CampaignCreateRequest,
    CampaignListResponse,
    CampaignResponse,
    CampaignUpdateRequest,
    CardPaymentRequest,
    CardPaymentResponse,
    CreateOrderRequest,
    CreateOrderResponse,
    DonationListResponse,
    DonationResponse,
    DonationStatsResponse,
    HealthCheckResponse,
    QueryRequest,
    QueryResponse,
    RefundRequest,
    StatusUpdateRequest,
    WebhookResponse,
)

logger = structlog.get_logger(__name__)

# Create routers
zalopay_router = APIRouter(prefix="/zalopay", tags=["zalopay"])
stripe_router = APIRouter(prefix="/stripe", tags=["stripe"])
campaign_router = APIRouter(prefix="/campaigns", tags=["campaigns"])
admin_router = APIRouter(prefix="/admin", tags=["admin"])
monitoring_router = APIRouter(tags=["monitoring"])


# Service dependencies; overridable through app.dependency_overrides
@lru_cache()
def get_reconciler() -> DonationReconciler:
    settings = get_settings()
    return DonationReconciler(
        settings.zalopay_gateway(),
        stripe_client=StripeClient.from_settings(settings),
    )


@lru_cache()
def get_campaign_service() -> CampaignService:
    return CampaignService()


@lru_cache()
def get_donation_service() -> DonationService:
    return DonationService()


@lru_cache()
def get_auditor() -> LedgerAuditor:
    return LedgerAuditor()


@lru_cache()
def get_health_check() -> HealthCheck:
    return HealthCheck()


def _http_error(e: CrowdfundError) -> HTTPException:
    """Translate a domain error; gateway failures get the opaque donor message."""
    if isinstance(e, GatewayError):
        return HTTPException(
            status_code=e.status_code,
            detail={
                "message": DONOR_ERROR_MESSAGE,
                "reason": e.reason,
                "return_code": e.return_code,
            },
        )
    return HTTPException(status_code=e.status_code, detail=e.message)


def _parse_status_filter(value: Optional[str]) -> Optional[DonationStatus]:
    if value is None or value.upper() == "ALL":
        return None
    try:
        return DonationStatus(value.upper())
    except ValueError:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Invalid status: {value}",
        )


def _donation_list(result: DonationPage) -> Dict[str, Any]:
    return {
        "donations": [DonationResponse.from_donation(d) for d in result.items],
        "total": result.total,
        "page": result.page,
        "pages": result.pages,
        "limit": result.limit,
        "total_amount": result.total_amount,
    }


async def _read_callback_fields(request: Request) -> Tuple[Optional[str], Optional[str]]:
    """Extract `data` and `mac` from a JSON or form-encoded callback body."""
    content_type = request.headers.get("content-type", "")
    try:
        if content_type.startswith("application/json"):
            body = await request.json()
        else:
            body = await request.form()
    except ValueError:
        return None, None

    if not hasattr(body, "get"):
        return None, None
    data, mac = body.get("data"), body.get("mac")
    return (
        data if isinstance(data, str) else None,
        mac if isinstance(mac, str) else None,
    )


# ----------------------------------------------------------------------
# Mobile wallet
# ----------------------------------------------------------------------


@zalopay_router.post(
    "/create",
    response_model=CreateOrderResponse,
    summary="Create a donation order",
    description="Create a PENDING donation and a ZaloPay order for it",
)
async def create_order(
    body: CreateOrderRequest,
    request: Request,
    db: AsyncSession = Depends(get_db),
    reconciler: DonationReconciler = Depends(get_reconciler),
) -> Dict[str, Any]:
    """Create a donation order."""
    logger.info(
        "api_create_order_request",
        campaign_id=str(body.campaign_id),
        donor_id=body.donor_id,
        amount=body.amount,
    )

    try:
        result = await reconciler.create_order(
            db,
            amount=body.amount,
            donor_id=body.donor_id,
            campaign_id=body.campaign_id,
            donor_name=body.donor_name,
            message=body.description,
            is_anonymous=body.is_anonymous,
            redirect_url=body.redirect_url,
            callback_url=reconciler.config.callback_url
            or str(request.url_for("zalopay_callback")),
        )
    except CrowdfundError as e:
        logger.warning("api_create_order_error", error=str(e), status_code=e.status_code)
        raise _http_error(e)

    return {
        "return_code": 1,
        "return_message": result.return_message or "Order created",
        "order_url": result.order_url,
        "zp_trans_token": result.zp_trans_token,
        "order_token": result.order_token,
        "app_trans_id": result.transaction_code,
        "donation_id": result.donation_id,
    }


@zalopay_router.post(
    "/callback",
    response_model=CallbackResponse,
    summary="ZaloPay callback",
    description="Signed payment notification; always answered with HTTP 200",
)
async def zalopay_callback(
    request: Request,
    db: AsyncSession = Depends(get_db),
    reconciler: DonationReconciler = Depends(get_reconciler),
) -> Dict[str, Any]:
    """Handle a ZaloPay payment callback."""
    data, mac = await _read_callback_fields(request)
    ack = await reconciler.handle_callback(db, data, mac)
    return ack.as_dict()


@zalopay_router.post(
    "/query",
    response_model=QueryResponse,
    summary="Query donation status",
    description="Merge the local donation with a live gateway status query",
)
async def query_status(
    body: QueryRequest,
    db: AsyncSession = Depends(get_db),
    reconciler: DonationReconciler = Depends(get_reconciler),
) -> Dict[str, Any]:
    """Query a donation's status locally and at the gateway."""
    try:
        view = await reconciler.query_status(db, body.app_trans_id)
    except CrowdfundError as e:
        logger.warning("api_query_status_error", transaction_code=body.app_trans_id, error=str(e))
        raise _http_error(e)

    return {
        "transaction_code": body.app_trans_id,
        "donation": DonationResponse.from_donation(view.donation),
        "gateway": view.gateway,
    }


@zalopay_router.post(
    "/refund",
    response_model=DonationResponse,
    summary="Refund a donation",
    description="Refund a successful donation in full (operators only)",
)
async def refund_donation(
    body: RefundRequest,
    principal: Principal = Depends(require_operator),
    db: AsyncSession = Depends(get_db),
    reconciler: DonationReconciler = Depends(get_reconciler),
) -> DonationResponse:
    """Refund a donation at the gateway, then debit the campaign."""
    logger.info(
        "api_refund_request",
        operator=principal.user_id,
        zp_trans_id=body.zp_trans_id,
        amount=body.amount,
    )

    try:
        donation = await reconciler.refund(db, body.zp_trans_id, body.amount, body.description)
    except CrowdfundError as e:
        logger.warning("api_refund_error", zp_trans_id=body.zp_trans_id, error=str(e))
        raise _http_error(e)

    return DonationResponse.from_donation(donation)


@zalopay_router.patch(
    "/donation/{donation_id}/status",
    response_model=DonationResponse,
    summary="Override donation status",
    description="Force a donation's status (operators only)",
)
async def override_donation_status(
    donation_id: uuid.UUID,
    body: StatusUpdateRequest,
    principal: Principal = Depends(require_operator),
    db: AsyncSession = Depends(get_db),
    reconciler: DonationReconciler = Depends(get_reconciler),
) -> DonationResponse:
    """Override a donation's status."""
    logger.info(
        "api_override_status_request",
        operator=principal.user_id,
        donation_id=str(donation_id),
        target=body.status.value,
    )

    try:
        donation = await reconciler.override_status(db, donation_id, body.status, body.reason)
    except CrowdfundError as e:
        logger.warning("api_override_status_error", donation_id=str(donation_id), error=str(e))
        raise _http_error(e)

    return DonationResponse.from_donation(donation)


@zalopay_router.get(
    "/donation/{transaction_code}",
    response_model=DonationResponse,
    summary="Get donation by transaction code",
)
async def get_donation(
    transaction_code: str,
    db: AsyncSession = Depends(get_db),
    donations: DonationService = Depends(get_donation_service),
) -> DonationResponse:
    try:
        donation = await donations.get_by_transaction_code(db, transaction_code)
    except CrowdfundError as e:
        raise _http_error(e)
    return DonationResponse.from_donation(donation)


@zalopay_router.get(
    "/donations/campaign/{campaign_id}",
    response_model=DonationListResponse,
    summary="List donations to a campaign",
)
async def list_campaign_donations(
    campaign_id: uuid.UUID,
    status_filter: Optional[str] = Query("SUCCESSFUL", alias="status"),
    include_anonymous: bool = Query(True),
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    db: AsyncSession = Depends(get_db),
    donations: DonationService = Depends(get_donation_service),
) -> Dict[str, Any]:
    """List a campaign's donations; pass `status=ALL` to include every status."""
    result = await donations.list_by_campaign(
        db,
        campaign_id,
        status=_parse_status_filter(status_filter),
        include_anonymous=include_anonymous,
        page=page,
        limit=limit,
    )
    return _donation_list(result)


@zalopay_router.get(
    "/donations/user/{user_id}",
    response_model=DonationListResponse,
    summary="List donations by a donor",
)
async def list_user_donations(
    user_id: str,
    status_filter: Optional[str] = Query(None, alias="status"),
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    db: AsyncSession = Depends(get_db),
    donations: DonationService = Depends(get_donation_service),
) -> Dict[str, Any]:
    result = await donations.list_by_donor(
        db,
        user_id,
        status=_parse_status_filter(status_filter),
        page=page,
        limit=limit,
    )
    return _donation_list(result)


@zalopay_router.get(
    "/donations/stats",
    response_model=DonationStatsResponse,
    summary="Donation statistics",
)
async def donation_stats(
    campaign_id: Optional[uuid.UUID] = None,
    start_date: Optional[datetime] = None,
    end_date: Optional[datetime] = None,
    db: AsyncSession = Depends(get_db),
    donations: DonationService = Depends(get_donation_service),
) -> Dict[str, Any]:
    return await donations.stats(
        db, campaign_id=campaign_id, start_date=start_date, end_date=end_date
    )


@zalopay_router.delete(
    "/donation/{donation_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    summary="Delete a donation",
    description="Delete a PENDING or FAILED donation (operators only)",
)
async def delete_donation(
    donation_id: uuid.UUID,
    principal: Principal = Depends(require_operator),
    db: AsyncSession = Depends(get_db),
    donations: DonationService = Depends(get_donation_service),
) -> Response:
    try:
        await donations.delete(db, donation_id)
    except CrowdfundError as e:
        logger.warning("api_delete_donation_error", donation_id=str(donation_id), error=str(e))
        raise _http_error(e)

    logger.info("api_donation_deleted", operator=principal.user_id, donation_id=str(donation_id))
    return Response(status_code=status.HTTP_204_NO_CONTENT)


# ----------------------------------------------------------------------
# Card processor
# ----------------------------------------------------------------------


@stripe_router.post(
    "/payment-intent",
    response_model=CardPaymentResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Create a card donation",
)
async def create_payment_intent(
    body: CardPaymentRequest,
    db: AsyncSession = Depends(get_db),
    reconciler: DonationReconciler = Depends(get_reconciler),
) -> Dict[str, Any]:
    """Create a PENDING card donation and its PaymentIntent."""
    try:
        result = await reconciler.create_card_payment(
            db,
            amount=body.amount,
            donor_id=body.donor_id,
            campaign_id=body.campaign_id,
            currency=body.currency,
            message=body.message,
            is_anonymous=body.is_anonymous,
        )
    except CrowdfundError as e:
        logger.warning("api_create_payment_intent_error", error=str(e), status_code=e.status_code)
        raise _http_error(e)

    return {
        "donation_id": result.donation_id,
        "transaction_code": result.transaction_code,
        "payment_intent_id": result.payment_intent_id,
        "client_secret": result.client_secret,
        "status": result.status,
    }


@stripe_router.post(
    "/webhook",
    response_model=WebhookResponse,
    summary="Stripe webhook endpoint",
    description="Handle Stripe webhook events",
)
async def stripe_webhook(
    request: Request,
    stripe_signature: Optional[str] = Header(default=None, alias="Stripe-Signature"),
    db: AsyncSession = Depends(get_db),
    reconciler: DonationReconciler = Depends(get_reconciler),
) -> Dict[str, Any]:
    """
    Handle Stripe webhook events.

    Verification failures answer 400; ledger failures answer 500 so Stripe
    redelivers the event.
    """
    payload = await request.body()

    try:
        event = reconciler.verify_card_event(payload, stripe_signature)
        outcome = await reconciler.handle_card_event(db, event)
    except CrowdfundError as e:
        logger.error("api_webhook_error", error=str(e), status_code=e.status_code)
        raise _http_error(e)

    return {"status": outcome, "event_id": event.get("id")}


# ----------------------------------------------------------------------
# Campaigns
# ----------------------------------------------------------------------


def _ensure_can_manage(principal: Principal, host_id: str) -> None:
    if not principal.is_operator and principal.user_id != host_id:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Only the campaign host or an operator can change this campaign",
        )


@campaign_router.post(
    "",
    response_model=CampaignResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Create a campaign",
)
async def create_campaign(
    body: CampaignCreateRequest,
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
    campaigns: CampaignService = Depends(get_campaign_service),
) -> CampaignResponse:
    try:
        campaign = await campaigns.create(
            db,
            host_id=principal.user_id,
            host_type=HostType.ADMIN if principal.is_operator else HostType.USER,
            name=body.name,
            description=body.description,
            campaign_type=body.campaign_type,
            target_amount=body.target_amount,
            status=body.status,
            end_date=body.end_date,
        )
    except CrowdfundError as e:
        raise _http_error(e)
    return CampaignResponse.from_campaign(campaign)


@campaign_router.get("", response_model=CampaignListResponse, summary="List campaigns")
async def list_campaigns(
    campaign_status: Optional[CampaignStatus] = Query(None, alias="status"),
    host_id: Optional[str] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    db: AsyncSession = Depends(get_db),
    campaigns: CampaignService = Depends(get_campaign_service),
) -> Dict[str, Any]:
    items, total = await campaigns.list_campaigns(
        db, status=campaign_status, host_id=host_id, page=page, limit=limit
    )
    return {
        "campaigns": [CampaignResponse.from_campaign(c) for c in items],
        "total": total,
        "page": page,
        "pages": (total + limit - 1) // limit,
        "limit": limit,
    }


@campaign_router.get("/{campaign_id}", response_model=CampaignResponse, summary="Get a campaign")
async def get_campaign(
    campaign_id: uuid.UUID,
    db: AsyncSession = Depends(get_db),
    campaigns: CampaignService = Depends(get_campaign_service),
) -> CampaignResponse:
    try:
        campaign = await campaigns.get(db, campaign_id)
    except CrowdfundError as e:
        raise _http_error(e)
    return CampaignResponse.from_campaign(campaign)


@campaign_router.patch(
    "/{campaign_id}", response_model=CampaignResponse, summary="Update a campaign"
)
async def update_campaign(
    campaign_id: uuid.UUID,
    body: CampaignUpdateRequest,
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
    campaigns: CampaignService = Depends(get_campaign_service),
) -> CampaignResponse:
    try:
        existing = await campaigns.get(db, campaign_id)
        _ensure_can_manage(principal, existing.host_id)
        campaign = await campaigns.update(db, campaign_id, body.model_dump(exclude_unset=True))
    except CrowdfundError as e:
        raise _http_error(e)
    return CampaignResponse.from_campaign(campaign)


@campaign_router.delete(
    "/{campaign_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    summary="Delete a campaign",
)
async def delete_campaign(
    campaign_id: uuid.UUID,
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
    campaigns: CampaignService = Depends(get_campaign_service),
) -> Response:
    try:
        existing = await campaigns.get(db, campaign_id)
        _ensure_can_manage(principal, existing.host_id)
        await campaigns.delete(db, campaign_id)
    except CrowdfundError as e:
        raise _http_error(e)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


# ----------------------------------------------------------------------
# Admin and monitoring
# ----------------------------------------------------------------------


@admin_router.post(
    "/audit",
    response_model=AuditResponse,
    summary="Run ledger audit",
    description="Recompute campaign funds from successful donations and report discrepancies",
)
async def run_audit(
    campaign_id: Optional[uuid.UUID] = None,
    principal: Principal = Depends(require_operator),
    db: AsyncSession = Depends(get_db),
    auditor: LedgerAuditor = Depends(get_auditor),
) -> Dict[str, Any]:
    logger.info(
        "api_audit_started",
        operator=principal.user_id,
        campaign_id=str(campaign_id) if campaign_id else None,
    )
    try:
        return await auditor.audit(db, campaign_id=campaign_id)
    except LedgerAuditError as e:
        logger.error("api_audit_error", error=str(e))
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=str(e),
        )


@monitoring_router.get(
    "/health",
    response_model=HealthCheckResponse,
    summary="Health check",
    description="Check overall system health",
)
async def health(health_check: HealthCheck = Depends(get_health_check)) -> Dict[str, Any]:
    """Health check endpoint for monitoring."""
    return await health_check.check_all()


@monitoring_router.get(
    "/health/live",
    response_model=HealthCheckResponse,
    summary="Liveness probe",
    description="Kubernetes liveness probe endpoint",
)
async def liveness(health_check: HealthCheck = Depends(get_health_check)) -> Dict[str, Any]:
    """Liveness probe endpoint."""
    return await health_check.liveness()


@monitoring_router.get(
    "/health/ready",
    response_model=HealthCheckResponse,
    summary="Readiness probe",
    description="Kubernetes readiness probe endpoint",
)
async def readiness(health_check: HealthCheck = Depends(get_health_check)) -> Dict[str, Any]:
    """Readiness probe endpoint."""
    result = await health_check.readiness()
    if result["status"] != "healthy":
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=result)
    return result


@monitoring_router.get(
    "/metrics",
    summary="Prometheus metrics",
    description="Expose Prometheus metrics",
    include_in_schema=False,
)
async def prometheus_metrics() -> Response:
    """Expose Prometheus metrics."""
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
