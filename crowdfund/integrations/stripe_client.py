"""
Stripe API client with retry logic and error classification.

Implements:
- SDK calls run in worker threads with a bounded timeout
- Circuit breaker pattern
- Exponential backoff for transient errors on idempotent calls
- Webhook signature verification
"""
import asyncio
import json
from enum import Enum
from typing import Any, Callable, Dict, Optional, TypeVar

import stripe
import structlog
from tenacity import (
    AsyncRetrying,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)
from tenacity.wait import wait_base

from crowdfund.config import Settings
from crowdfund.core.errors import GatewayError, GatewayTimeoutError, SignatureError
from crowdfund.integrations.resilience import CircuitBreaker
from crowdfund.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

T = TypeVar("T")


class StripeErrorType(Enum):
    """Classification of Stripe errors for retry logic."""

    TRANSIENT = "transient"  # Retry these
    PERMANENT = "permanent"  # Don't retry these
    RATE_LIMIT = "rate_limit"  # Retry with longer backoff


def _is_retryable(error: BaseException) -> bool:
    return isinstance(error, GatewayError) and error.retryable


class StripeClient:
    """
    Wrapper for the Stripe API used by card donations.

    The API key is passed per request; the SDK's module-level key is never
    set, so several clients (or test doubles) can coexist.
    """

    GATEWAY = "stripe"

    def __init__(
        self,
        secret_key: str,
        webhook_secret: str,
        api_version: Optional[str] = None,
        timeout_seconds: float = 10.0,
        max_attempts: int = 3,
        retry_wait: Optional[wait_base] = None,
    ) -> None:
        self.secret_key = secret_key
        self.webhook_secret = webhook_secret
        self.api_version = api_version
        self.timeout_seconds = timeout_seconds
        self.max_attempts = max_attempts
        self.retry_wait = retry_wait or wait_exponential(multiplier=1, min=1, max=16)
        self.circuit_breaker = CircuitBreaker(name=self.GATEWAY)

        logger.info(
            "stripe_client_initialized",
            api_version=api_version,
            test_mode=secret_key.startswith("sk_test_"),
        )

    @classmethod
    def from_settings(cls, settings: Settings) -> "StripeClient":
        """Build a client from application settings."""
        return cls(
            secret_key=settings.stripe_secret_key,
            webhook_secret=settings.stripe_webhook_secret,
            api_version=settings.stripe_api_version,
            timeout_seconds=settings.stripe_timeout_seconds,
            max_attempts=settings.gateway_retry_max_attempts,
        )

    def _request_options(self) -> Dict[str, Any]:
        options: Dict[str, Any] = {"api_key": self.secret_key}
        if self.api_version:
            options["stripe_version"] = self.api_version
        return options

    @staticmethod
    def _classify_error(error: stripe.StripeError) -> StripeErrorType:
        """Classify Stripe error for retry logic."""
        if isinstance(error, stripe.RateLimitError):
            return StripeErrorType.RATE_LIMIT
        elif isinstance(error, (stripe.APIConnectionError, stripe.APIError)):
            return StripeErrorType.TRANSIENT
        elif isinstance(
            error,
            (
                stripe.CardError,
                stripe.InvalidRequestError,
                stripe.AuthenticationError,
                stripe.PermissionError,
                stripe.IdempotencyError,
            ),
        ):
            return StripeErrorType.PERMANENT
        else:
            # Unknown errors are treated as transient
            return StripeErrorType.TRANSIENT

    def _to_gateway_error(self, operation: str, error: stripe.StripeError) -> GatewayError:
        error_type = self._classify_error(error)
        metrics.record_gateway_error(self.GATEWAY, error_type.value)

        logger.error(
            "stripe_api_error",
            operation=operation,
            error_type=error_type.value,
            error_code=getattr(error, "code", None),
            error_message=str(error),
        )

        return GatewayError(
            getattr(error, "user_message", None) or str(error),
            reason=getattr(error, "code", None) or error_type.value,
            retryable=error_type is not StripeErrorType.PERMANENT,
        )

    async def _call(self, operation: str, func: Callable[[], T]) -> T:
        """Run a blocking SDK call in a thread, bounded by the client timeout."""
        loop = asyncio.get_running_loop()
        start = loop.time()

        async def _run() -> T:
            return await asyncio.wait_for(asyncio.to_thread(func), timeout=self.timeout_seconds)

        try:
            result = await self.circuit_breaker.call(_run)
        except asyncio.TimeoutError as e:
            metrics.record_gateway_error(self.GATEWAY, "timeout")
            metrics.record_gateway_call(self.GATEWAY, operation, "timeout", loop.time() - start)
            logger.error("stripe_request_timeout", operation=operation)
            raise GatewayTimeoutError(
                f"Stripe {operation} timed out", reason="timeout", retryable=True
            ) from e
        except stripe.StripeError as e:
            metrics.record_gateway_call(self.GATEWAY, operation, "error", loop.time() - start)
            raise self._to_gateway_error(operation, e) from e

        metrics.record_gateway_call(self.GATEWAY, operation, "success", loop.time() - start)
        return result

    async def _call_with_retry(self, operation: str, func: Callable[[], T]) -> T:
        retrying = AsyncRetrying(
            retry=retry_if_exception(_is_retryable),
            stop=stop_after_attempt(self.max_attempts),
            wait=self.retry_wait,
            reraise=True,
        )
        return await retrying(self._call, operation, func)

    async def create_payment_intent(
        self,
        amount: int,
        currency: str,
        idempotency_key: str,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> stripe.PaymentIntent:
        """
        Create a PaymentIntent.

        The idempotency key makes retries safe: Stripe returns the original
        intent instead of creating a second one.

        Raises:
            GatewayError: If payment creation fails
        """
        logger.info(
            "creating_payment_intent",
            amount=amount,
            currency=currency,
            idempotency_key=idempotency_key,
        )

        def _create() -> stripe.PaymentIntent:
            return stripe.PaymentIntent.create(
                amount=amount,
                currency=currency.lower(),
                idempotency_key=idempotency_key,
                metadata=metadata or {},
                automatic_payment_methods={"enabled": True},
                **self._request_options(),
            )

        payment_intent = await self._call_with_retry("create_payment_intent", _create)

        logger.info(
            "payment_intent_created",
            payment_intent_id=payment_intent.id,
            status=payment_intent.status,
        )
        return payment_intent

    async def retrieve_payment_intent(self, payment_intent_id: str) -> stripe.PaymentIntent:
        """Retrieve a PaymentIntent by ID."""
        logger.info("retrieving_payment_intent", payment_intent_id=payment_intent_id)

        def _retrieve() -> stripe.PaymentIntent:
            return stripe.PaymentIntent.retrieve(payment_intent_id, **self._request_options())

        return await self._call_with_retry("retrieve_payment_intent", _retrieve)

    async def create_refund(
        self,
        payment_intent_id: str,
        idempotency_key: str,
        reason: Optional[str] = None,
    ) -> stripe.Refund:
        """
        Refund a PaymentIntent in full.

        Raises:
            GatewayError: If refund creation fails
        """
        logger.info("creating_refund", payment_intent_id=payment_intent_id)

        def _create_refund() -> stripe.Refund:
            kwargs: Dict[str, Any] = {
                "payment_intent": payment_intent_id,
                "idempotency_key": idempotency_key,
            }
            if reason:
                kwargs["reason"] = reason
            return stripe.Refund.create(**kwargs, **self._request_options())

        refund = await self._call_with_retry("create_refund", _create_refund)

        logger.info("refund_created", refund_id=refund.id, status=refund.status)
        return refund

    def construct_event(self, payload: bytes, signature_header: Optional[str]) -> Dict[str, Any]:
        """
        Verify a webhook signature and parse the event as a plain dict.

        Raises:
            SignatureError: If the signature header is missing or invalid
        """
        if not signature_header:
            raise SignatureError("Missing Stripe-Signature header")
        body = payload.decode("utf-8") if isinstance(payload, bytes) else payload
        try:
            stripe.WebhookSignature.verify_header(body, signature_header, self.webhook_secret)
            event = json.loads(body)
        except stripe.SignatureVerificationError as e:
            logger.warning("stripe_webhook_signature_invalid", signature_prefix=signature_header[:10])
            raise SignatureError("Invalid webhook signature") from e
        except ValueError as e:
            raise SignatureError("Invalid webhook payload") from e
        if not isinstance(event, dict):
            raise SignatureError("Invalid webhook payload")
        return event
