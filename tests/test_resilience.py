"""
Tests for the gateway circuit breaker.
"""
from typing import Any
from unittest.mock import AsyncMock

import pytest

from crowdfund.core.errors import GatewayError
from crowdfund.integrations.resilience import CircuitBreaker


async def _trip(breaker: CircuitBreaker, times: int) -> None:
    failing = AsyncMock(side_effect=GatewayError("boom", reason="http_502"))
    for _ in range(times):
        with pytest.raises(GatewayError, match="boom"):
            await breaker.call(failing)


class TestCircuitBreaker:
    """Test suite for circuit breaker state changes."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_passes_calls_through(self) -> None:
        breaker = CircuitBreaker("zalopay", failure_threshold=2)
        func = AsyncMock(return_value={"return_code": 1})

        assert await breaker.call(func, "a", b=2) == {"return_code": 1}
        func.assert_awaited_once_with("a", b=2)
        assert breaker.state == "closed"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_opens_after_threshold(self) -> None:
        breaker = CircuitBreaker("zalopay", failure_threshold=3)
        await _trip(breaker, 3)

        assert breaker.state == "open"
        func = AsyncMock()
        with pytest.raises(GatewayError) as exc_info:
            await breaker.call(func)
        assert exc_info.value.reason == "circuit_open"
        assert exc_info.value.retryable is True
        func.assert_not_awaited()

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_success_resets_failure_count(self) -> None:
        breaker = CircuitBreaker("zalopay", failure_threshold=2)
        await _trip(breaker, 1)
        await breaker.call(AsyncMock(return_value=None))
        await _trip(breaker, 1)

        assert breaker.state == "closed"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_half_open_then_closed(self, mocker: Any) -> None:
        clock = mocker.patch("crowdfund.integrations.resilience.time.monotonic", return_value=100.0)
        breaker = CircuitBreaker("stripe", failure_threshold=1, timeout=30, success_threshold=2)
        await _trip(breaker, 1)

        clock.return_value = 131.0
        ok = AsyncMock(return_value="ok")
        assert await breaker.call(ok) == "ok"
        assert breaker.state == "half_open"

        await breaker.call(ok)
        assert breaker.state == "closed"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_half_open_failure_reopens(self, mocker: Any) -> None:
        clock = mocker.patch("crowdfund.integrations.resilience.time.monotonic", return_value=100.0)
        breaker = CircuitBreaker("stripe", failure_threshold=1, timeout=30)
        await _trip(breaker, 1)

        clock.return_value = 131.0
        await _trip(breaker, 1)

        assert breaker.state == "open"
