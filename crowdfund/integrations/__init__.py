"""External payment gateway integrations."""
from .resilience import CircuitBreaker
from .stripe_client import StripeClient
from .zalopay_client import ZaloPayClient

__all__ = ["CircuitBreaker", "StripeClient", "ZaloPayClient"]
