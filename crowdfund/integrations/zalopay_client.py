"""
ZaloPay v2 API client.

Implements:
- Order, query and refund request signing with the outbound key (key1)
- Callback verification with the inbound key (key2), constant-time compare
- Bounded timeouts mapped onto the gateway error taxonomy
- Retries for the idempotent query and refund calls only
"""
import hashlib
import hmac
import json
import time
from typing import Any, Dict, List, Optional

import httpx
import structlog
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)
from tenacity.wait import wait_base

from crowdfund.config import GatewayConfig
from crowdfund.core.errors import GatewayError, GatewayTimeoutError
from crowdfund.integrations.resilience import CircuitBreaker
from crowdfund.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

# Gateway return codes
RETURN_SUCCESS = 1
RETURN_FAILED = 2
RETURN_PROCESSING = 3


def _is_retryable(error: BaseException) -> bool:
    return isinstance(error, GatewayError) and error.retryable


def compute_mac(key: str, message: str) -> str:
    """HMAC-SHA256 of `message` under `key`, hex encoded."""
    return hmac.new(key.encode("utf-8"), message.encode("utf-8"), hashlib.sha256).hexdigest()


class ZaloPayClient:
    """
    Async client for the ZaloPay v2 merchant API.

    The client never touches the database; it signs requests, verifies
    callbacks and maps transport failures onto `GatewayError` /
    `GatewayTimeoutError`.
    """

    GATEWAY = "zalopay"

    def __init__(
        self,
        config: GatewayConfig,
        http_client: Optional[httpx.AsyncClient] = None,
        max_attempts: Optional[int] = None,
        retry_wait: Optional[wait_base] = None,
    ) -> None:
        """
        Initialize ZaloPay client.

        Args:
            config: Gateway configuration (app id, keys, endpoints, timeout)
            http_client: Optional shared HTTP client; one is created otherwise
            max_attempts: Attempts for the idempotent query/refund calls
                (defaults to `config.retry_max_attempts`)
            retry_wait: Wait strategy between retries
        """
        self.config = config
        self._http = http_client or httpx.AsyncClient(timeout=config.timeout_seconds)
        self._owns_http = http_client is None
        self.max_attempts = max_attempts or config.retry_max_attempts
        self.retry_wait = retry_wait or wait_exponential(multiplier=0.5, min=0.5, max=4)
        self.circuit_breaker = CircuitBreaker(name=self.GATEWAY)

        logger.info(
            "zalopay_client_initialized",
            app_id=config.app_id,
            create_endpoint=config.endpoints.create,
        )

    async def close(self) -> None:
        """Close the underlying HTTP client if this instance created it."""
        if self._owns_http:
            await self._http.aclose()

    # ------------------------------------------------------------------
    # Signing
    # ------------------------------------------------------------------

    def sign_order(self, order: Dict[str, Any]) -> str:
        """MAC over ``app_id|app_trans_id|app_user|amount|app_time|embed_data|item``."""
        message = "|".join(
            str(order[field])
            for field in ("app_id", "app_trans_id", "app_user", "amount", "app_time", "embed_data", "item")
        )
        return compute_mac(self.config.outbound_signing_key, message)

    def sign_query(self, app_trans_id: str) -> str:
        """MAC over ``app_id|app_trans_id|key1``."""
        key = self.config.outbound_signing_key
        return compute_mac(key, f"{self.config.app_id}|{app_trans_id}|{key}")

    def sign_refund(self, params: Dict[str, Any]) -> str:
        """MAC over ``app_id|zp_trans_id|amount|description|timestamp``."""
        message = "|".join(
            str(params[field])
            for field in ("app_id", "zp_trans_id", "amount", "description", "timestamp")
        )
        return compute_mac(self.config.outbound_signing_key, message)

    def verify_callback(self, data: str, mac: str) -> bool:
        """
        Verify a callback MAC over the raw `data` string using the inbound key.

        Returns:
            bool: True only if the MAC matches
        """
        if not data or not mac:
            return False
        expected = compute_mac(self.config.inbound_verification_key, data)
        return hmac.compare_digest(expected.encode("utf-8"), mac.strip().lower().encode("utf-8"))

    # ------------------------------------------------------------------
    # Requests
    # ------------------------------------------------------------------

    def build_order(
        self,
        app_trans_id: str,
        app_user: str,
        amount: int,
        description: str,
        embed_data: Dict[str, Any],
        items: List[Dict[str, Any]],
        callback_url: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Build a signed order creation request."""
        order: Dict[str, Any] = {
            "app_id": self.config.app_id,
            "app_trans_id": app_trans_id,
            "app_user": app_user,
            "app_time": int(time.time() * 1000),
            "amount": amount,
            "description": description,
            "bank_code": "zalopayapp",
            "item": json.dumps(items, ensure_ascii=False, separators=(",", ":")),
            "embed_data": json.dumps(embed_data, ensure_ascii=False, separators=(",", ":")),
        }
        callback_url = callback_url or self.config.callback_url
        if callback_url:
            order["callback_url"] = callback_url
        order["mac"] = self.sign_order(order)
        return order

    async def _post(self, operation: str, url: str, params: Dict[str, Any]) -> Dict[str, Any]:
        start = time.monotonic()
        try:
            response = await self.circuit_breaker.call(
                self._http.post,
                url,
                data={k: str(v) for k, v in params.items()},
                timeout=self.config.timeout_seconds,
            )
            response.raise_for_status()
            body = response.json()
        except httpx.TimeoutException as e:
            metrics.record_gateway_error(self.GATEWAY, "timeout")
            metrics.record_gateway_call(self.GATEWAY, operation, "timeout", time.monotonic() - start)
            logger.error("zalopay_request_timeout", operation=operation, error=str(e))
            raise GatewayTimeoutError(
                f"ZaloPay {operation} timed out", reason="timeout", retryable=True
            ) from e
        except httpx.HTTPStatusError as e:
            status = e.response.status_code
            retryable = status >= 500 or status == 429
            metrics.record_gateway_error(self.GATEWAY, "transient" if retryable else "permanent")
            metrics.record_gateway_call(self.GATEWAY, operation, "http_error", time.monotonic() - start)
            logger.error("zalopay_http_error", operation=operation, status_code=status)
            raise GatewayError(
                f"ZaloPay {operation} returned HTTP {status}",
                reason=f"http_{status}",
                retryable=retryable,
            ) from e
        except (httpx.HTTPError, ValueError) as e:
            metrics.record_gateway_error(self.GATEWAY, "transient")
            metrics.record_gateway_call(self.GATEWAY, operation, "transport_error", time.monotonic() - start)
            logger.error("zalopay_transport_error", operation=operation, error=str(e))
            raise GatewayError(
                f"ZaloPay {operation} failed: {e}", reason="transport_error", retryable=True
            ) from e

        if not isinstance(body, dict) or "return_code" not in body:
            metrics.record_gateway_call(self.GATEWAY, operation, "invalid_response", time.monotonic() - start)
            raise GatewayError(
                f"Invalid response from ZaloPay {operation}",
                reason="invalid_response",
                retryable=False,
            )

        metrics.record_gateway_call(
            self.GATEWAY, operation, str(body.get("return_code")), time.monotonic() - start
        )
        logger.info(
            "zalopay_response",
            operation=operation,
            return_code=body.get("return_code"),
            sub_return_code=body.get("sub_return_code"),
        )
        return body

    async def _post_with_retry(self, operation: str, url: str, params: Dict[str, Any]) -> Dict[str, Any]:
        def _log_retry(retry_state: RetryCallState) -> None:
            logger.warning(
                "zalopay_request_retry",
                operation=operation,
                attempt=retry_state.attempt_number,
            )

        retrying = AsyncRetrying(
            retry=retry_if_exception(_is_retryable),
            stop=stop_after_attempt(self.max_attempts),
            wait=self.retry_wait,
            before_sleep=_log_retry,
            reraise=True,
        )
        return await retrying(self._post, operation, url, params)

    async def create_order(self, order: Dict[str, Any]) -> Dict[str, Any]:
        """
        Submit a signed order.

        Not retried: a second submission after an ambiguous failure could
        open a second payable order for the same transaction code.

        Returns:
            Dict[str, Any]: Gateway response (``return_code``, ``order_url``, ...)

        Raises:
            GatewayTimeoutError: If the gateway did not answer in time
            GatewayError: On any other transport failure
        """
        logger.info(
            "creating_zalopay_order",
            app_trans_id=order["app_trans_id"],
            amount=order["amount"],
        )
        return await self._post("create_order", self.config.endpoints.create, order)

    async def query_order(self, app_trans_id: str) -> Dict[str, Any]:
        """Query the gateway-side status of an order."""
        params = {
            "app_id": self.config.app_id,
            "app_trans_id": app_trans_id,
            "mac": self.sign_query(app_trans_id),
        }
        return await self._post_with_retry("query_order", self.config.endpoints.query, params)

    async def refund(
        self,
        m_refund_id: str,
        zp_trans_id: str,
        amount: int,
        description: str,
    ) -> Dict[str, Any]:
        """
        Request a refund of a paid order.

        `m_refund_id` must be stable per donation so a retried request is
        deduplicated by the gateway.
        """
        params: Dict[str, Any] = {
            "app_id": self.config.app_id,
            "m_refund_id": m_refund_id,
            "zp_trans_id": zp_trans_id,
            "amount": amount,
            "timestamp": int(time.time() * 1000),
            "description": description,
        }
        params["mac"] = self.sign_refund(params)
        logger.info("requesting_zalopay_refund", m_refund_id=m_refund_id, amount=amount)
        return await self._post_with_retry("refund", self.config.endpoints.refund, params)
