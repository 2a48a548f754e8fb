"""
Pydantic schemas for API request/response models.
"""
from datetime import date, datetime
from typing import Any, Dict, List, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator

from crowdfund.database.models import (
    Campaign,
    CampaignStatus,
    Donation,
    DonationStatus,
    HostType,
    PaymentMethod,
)


class CreateOrderRequest(BaseModel):
    """Request schema for creating a mobile-wallet donation order."""

    amount: int = Field(..., gt=0, description="Amount in VND")
    donor_id: str = Field(..., min_length=1, description="Donor user id")
    campaign_id: UUID = Field(..., description="Campaign to donate to")
    donor_name: str = Field(..., min_length=1, description="Donor display name")
    description: Optional[str] = Field(default=None, max_length=1000, description="Donation message")
    is_anonymous: bool = Field(default=False, description="Hide the donor in public listings")
    redirect_url: Optional[str] = Field(default=None, description="Where the wallet returns the donor")

    model_config = {
        "json_schema_extra": {
            "examples": [
                {
                    "amount": 50000,
                    "donor_id": "64b7f0c2a1",
                    "campaign_id": "123e4567-e89b-12d3-a456-426614174000",
                    "donor_name": "Nguyen Van A",
                    "description": "For the school library",
                    "is_anonymous": False,
                    "redirect_url": "https://example.org/thanks",
                }
            ]
        }
    }


class CreateOrderResponse(BaseModel):
    """Response schema for order creation."""

    return_code: int = Field(..., description="1 when the order was created")
    return_message: str = Field(..., description="Gateway message")
    order_url: Optional[str] = Field(default=None, description="Payment page URL")
    zp_trans_token: Optional[str] = Field(default=None, description="Gateway transaction token")
    order_token: Optional[str] = Field(default=None, description="Gateway order token")
    app_trans_id: str = Field(..., description="Transaction code")
    donation_id: UUID = Field(..., description="Local donation id")


class CallbackResponse(BaseModel):
    """Acknowledgement returned to the gateway."""

    return_code: int
    return_message: str


class QueryRequest(BaseModel):
    """Request schema for a status query."""

    app_trans_id: str = Field(..., min_length=1, description="Transaction code")


class RefundRequest(BaseModel):
    """Request schema for a full refund."""

    zp_trans_id: str = Field(..., min_length=1, description="Gateway transaction id")
    amount: int = Field(..., gt=0, description="Refund amount (must equal the donation amount)")
    description: Optional[str] = Field(default=None, max_length=255, description="Refund reason")


class StatusUpdateRequest(BaseModel):
    """Request schema for an operator status override."""

    status: DonationStatus = Field(..., description="Target status")
    reason: Optional[str] = Field(default=None, max_length=1000, description="Audit note")


class DonationResponse(BaseModel):
    """Response schema for a donation."""

    id: UUID
    donor_id: Optional[str] = Field(default=None, description="Hidden for anonymous donations")
    campaign_id: UUID
    amount: int
    currency: str
    message: Optional[str] = None
    payment_method: PaymentMethod
    transaction_code: str
    gateway_transaction_id: Optional[str] = None
    status: DonationStatus
    is_anonymous: bool
    error_message: Optional[str] = None
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_donation(cls, donation: Donation) -> "DonationResponse":
        """Build the response, dropping the donor reference of anonymous donations."""
        return cls(
            id=donation.id,
            donor_id=None if donation.is_anonymous else donation.donor_id,
            campaign_id=donation.campaign_id,
            amount=donation.amount,
            currency=donation.currency,
            message=donation.message,
            payment_method=donation.payment_method,
            transaction_code=donation.transaction_code,
            gateway_transaction_id=donation.gateway_transaction_id,
            status=donation.status,
            is_anonymous=donation.is_anonymous,
            error_message=donation.error_message,
            created_at=donation.created_at,
            updated_at=donation.updated_at,
        )


class QueryResponse(BaseModel):
    """Local donation merged with the gateway status."""

    transaction_code: str
    donation: DonationResponse
    gateway: Dict[str, Any]


class DonationListResponse(BaseModel):
    """Paginated donations."""

    donations: List[DonationResponse]
    total: int
    page: int
    pages: int
    limit: int
    total_amount: int = Field(..., description="Sum of SUCCESSFUL donation amounts")


class DonationStatsResponse(BaseModel):
    """Donation counts and sums."""

    by_status: Dict[str, Dict[str, int]]
    by_payment_method: Dict[str, Dict[str, int]]


class CardPaymentRequest(BaseModel):
    """Request schema for a card donation."""

    amount: int = Field(..., gt=0, description="Amount in the currency's smallest unit")
    donor_id: str = Field(..., min_length=1, description="Donor user id")
    campaign_id: UUID = Field(..., description="Campaign to donate to")
    currency: Optional[str] = Field(default=None, min_length=3, max_length=3, description="Currency code")
    message: Optional[str] = Field(default=None, max_length=1000, description="Donation message")
    is_anonymous: bool = Field(default=False, description="Hide the donor in public listings")

    @field_validator("currency")
    @classmethod
    def validate_currency(cls, v: Optional[str]) -> Optional[str]:
        """Normalize currency code."""
        return v.upper() if v else v


class CardPaymentResponse(BaseModel):
    """Response schema for card donation creation."""

    donation_id: UUID
    transaction_code: str
    payment_intent_id: str
    client_secret: Optional[str] = None
    status: str


class WebhookResponse(BaseModel):
    """Response schema for webhook processing."""

    status: str = Field(..., description="Processing outcome")
    event_id: Optional[str] = Field(default=None, description="Stripe event ID")


class CampaignCreateRequest(BaseModel):
    """Request schema for creating a campaign."""

    name: str = Field(..., min_length=1, max_length=255)
    description: str = Field(..., min_length=1)
    campaign_type: str = Field(..., min_length=1, max_length=64)
    target_amount: int = Field(..., gt=0)
    status: CampaignStatus = CampaignStatus.PREPARING
    end_date: Optional[date] = None


class CampaignUpdateRequest(BaseModel):
    """Partial campaign update; the running fund is not updatable."""

    model_config = ConfigDict(extra="forbid")

    name: Optional[str] = Field(default=None, min_length=1, max_length=255)
    description: Optional[str] = Field(default=None, min_length=1)
    campaign_type: Optional[str] = Field(default=None, min_length=1, max_length=64)
    target_amount: Optional[int] = Field(default=None, gt=0)
    status: Optional[CampaignStatus] = None
    end_date: Optional[date] = None

    @field_validator("name", "description", "campaign_type", "target_amount", "status")
    @classmethod
    def reject_null(cls, v: Any) -> Any:
        """Only `end_date` may be cleared; omit a field to leave it unchanged."""
        if v is None:
            raise ValueError("Field cannot be null")
        return v


class CampaignResponse(BaseModel):
    """Response schema for a campaign."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID
    host_id: str
    host_type: HostType
    name: str
    description: str
    campaign_type: str
    target_amount: int
    current_fund: int
    status: CampaignStatus
    end_date: Optional[date] = None
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_campaign(cls, campaign: Campaign) -> "CampaignResponse":
        return cls.model_validate(campaign)


class CampaignListResponse(BaseModel):
    """Paginated campaigns."""

    campaigns: List[CampaignResponse]
    total: int
    page: int
    pages: int
    limit: int


class AuditResponse(BaseModel):
    """Response schema for a ledger audit."""

    audit_id: int
    status: str
    campaigns_checked: int
    discrepancy_count: int
    discrepancy_amount: int
    discrepancies: List[Dict[str, Any]]
    started_at: datetime
    completed_at: Optional[datetime] = None


class HealthCheckResponse(BaseModel):
    """Response schema for health checks."""

    status: str = Field(..., description="Overall health status (healthy/unhealthy)")
    checks: Optional[Dict[str, Any]] = Field(default=None, description="Individual service checks")
    message: Optional[str] = Field(default=None, description="Status message")
