"""Application settings using Pydantic for environment-based configuration."""
from functools import lru_cache
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class GatewayEndpoints(BaseModel):
    """Remote endpoints of the mobile-wallet gateway."""

    model_config = ConfigDict(frozen=True)

    create: str
    query: str
    refund: str


class GatewayConfig(BaseModel):
    """
    Mobile-wallet gateway configuration handed to the reconciler at startup.

    The outbound key signs order/query/refund requests, the inbound key
    verifies callbacks. The two must differ.
    """

    model_config = ConfigDict(frozen=True)

    app_id: str
    outbound_signing_key: str
    inbound_verification_key: str
    endpoints: GatewayEndpoints
    timeout_seconds: float = 10.0
    min_amount: int = 1000
    max_amount: int = 5_000_000
    currency: str = "VND"
    callback_url: Optional[str] = None
    retry_max_attempts: int = 3

    @model_validator(mode="after")
    def check_distinct_keys(self) -> "GatewayConfig":
        """Reject configurations that reuse one key for both directions."""
        if self.outbound_signing_key == self.inbound_verification_key:
            raise ValueError(
                "Outbound signing key and inbound verification key must differ"
            )
        if self.min_amount <= 0 or self.max_amount < self.min_amount:
            raise ValueError("Invalid donation amount bounds")
        if self.retry_max_attempts < 1:
            raise ValueError("retry_max_attempts must be at least 1")
        return self


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # ZaloPay Configuration
    zalopay_app_id: str = Field(..., description="ZaloPay merchant app id")
    zalopay_key1: str = Field(..., description="Key signing outbound requests")
    zalopay_key2: str = Field(..., description="Key verifying inbound callbacks")
    zalopay_create_endpoint: str = Field(
        default="https://sb-openapi.zalopay.vn/v2/create", description="Order creation URL"
    )
    zalopay_query_endpoint: str = Field(
        default="https://sb-openapi.zalopay.vn/v2/query", description="Order query URL"
    )
    zalopay_refund_endpoint: str = Field(
        default="https://sb-openapi.zalopay.vn/v2/refund", description="Refund URL"
    )
    zalopay_callback_url: Optional[str] = Field(
        default=None, description="Public callback URL (derived from request if unset)"
    )
    zalopay_timeout_seconds: float = Field(default=10.0, description="Gateway call timeout")

    # Stripe Configuration
    stripe_secret_key: str = Field(..., description="Stripe secret API key (sk_test_...)")
    stripe_publishable_key: str = Field(..., description="Stripe publishable key (pk_test_...)")
    stripe_webhook_secret: str = Field(..., description="Stripe webhook signing secret")
    stripe_api_version: str = Field(default="2023-10-16", description="Stripe API version")
    stripe_timeout_seconds: float = Field(default=10.0, description="Stripe call timeout")

    # Donation limits
    donation_min_amount: int = Field(default=1000, description="Minimum donation amount")
    donation_max_amount: int = Field(default=5_000_000, description="Maximum donation amount")
    default_currency: str = Field(default="VND", description="Mobile-wallet currency")

    # Database Configuration
    database_url: str = Field(..., description="Async SQLAlchemy database URL")
    database_pool_size: int = Field(default=20, description="Database connection pool size")
    database_max_overflow: int = Field(default=50, description="Max database connection overflow")
    database_echo: bool = Field(default=False, description="Echo SQL queries (debug)")

    # Application Configuration
    app_name: str = Field(default="crowdfund", description="Application name")
    app_env: str = Field(default="development", description="Environment (development/production)")
    log_level: str = Field(default="INFO", description="Logging level")
    debug: bool = Field(default=False, description="Debug mode")

    # API Configuration
    api_host: str = Field(default="0.0.0.0", description="API host")
    api_port: int = Field(default=8000, description="API port")
    api_workers: int = Field(default=4, description="Number of API workers")
    allowed_origins: str = Field(
        default="http://localhost:3000,http://localhost:5173",
        description="CORS allowed origins (comma-separated)"
    )

    # Gateway resilience
    gateway_retry_max_attempts: int = Field(
        default=3, ge=1, description="Max attempts for idempotent gateway calls"
    )

    # Security
    jwt_secret_key: str = Field(..., description="Secret verifying bearer tokens")
    jwt_algorithm: str = Field(default="HS256", description="Bearer token algorithm")
    operator_roles: str = Field(
        default="admin", description="Roles allowed to run operator actions (comma-separated)"
    )

    # Ledger audit
    audit_hour: int = Field(default=2, ge=0, le=23, description="Hour of the daily ledger audit")

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    @field_validator("stripe_secret_key")
    @classmethod
    def validate_stripe_key(cls, v: str) -> str:
        """Validate that Stripe secret key starts with sk_test_ or sk_live_."""
        if not v.startswith("sk_test_") and not v.startswith("sk_live_"):
            raise ValueError(
                "Invalid Stripe secret key format. Must start with 'sk_test_' or 'sk_live_'"
            )
        return v

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate log level."""
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if v.upper() not in valid_levels:
            raise ValueError(f"Invalid log level. Must be one of: {valid_levels}")
        return v.upper()

    @model_validator(mode="after")
    def validate_zalopay_keys(self) -> "Settings":
        """Refuse to start with the same ZaloPay key for both directions."""
        if self.zalopay_key1 == self.zalopay_key2:
            raise ValueError("ZALOPAY_KEY1 and ZALOPAY_KEY2 must be different keys")
        return self

    def get_allowed_origins_list(self) -> List[str]:
        """Parse allowed origins from comma-separated string."""
        return [origin.strip() for origin in self.allowed_origins.split(",")]

    def get_operator_roles(self) -> frozenset[str]:
        """Parse operator roles from comma-separated string."""
        return frozenset(r.strip() for r in self.operator_roles.split(",") if r.strip())

    def zalopay_gateway(self) -> GatewayConfig:
        """Build the immutable gateway configuration for the reconciler."""
        return GatewayConfig(
            app_id=self.zalopay_app_id,
            outbound_signing_key=self.zalopay_key1,
            inbound_verification_key=self.zalopay_key2,
            endpoints=GatewayEndpoints(
                create=self.zalopay_create_endpoint,
                query=self.zalopay_query_endpoint,
                refund=self.zalopay_refund_endpoint,
            ),
            timeout_seconds=self.zalopay_timeout_seconds,
            min_amount=self.donation_min_amount,
            max_amount=self.donation_max_amount,
            currency=self.default_currency,
            callback_url=self.zalopay_callback_url,
            retry_max_attempts=self.gateway_retry_max_attempts,
        )

    @property
    def is_production(self) -> bool:
        """Check if running in production environment."""
        return self.app_env.lower() == "production"

    @property
    def is_test_mode(self) -> bool:
        """Check if using Stripe test mode."""
        return self.stripe_secret_key.startswith("sk_test_")


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.

    Uses lru_cache to ensure settings are only loaded once.
    """
    return Settings()
