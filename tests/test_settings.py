"""
Tests for environment-driven settings and the gateway configuration.
"""
from typing import Any, Dict

import pytest

from crowdfund.config.settings import GatewayConfig, GatewayEndpoints, Settings


def _settings(**overrides: Any) -> Settings:
    values: Dict[str, Any] = {
        "zalopay_app_id": "2553",
        "zalopay_key1": "outbound-key",
        "zalopay_key2": "inbound-key",
        "stripe_secret_key": "sk_test_abc",
        "stripe_publishable_key": "pk_test_abc",
        "stripe_webhook_secret": "whsec_abc",
        "database_url": "sqlite+aiosqlite:///:memory:",
        "jwt_secret_key": "secret",
    }
    values.update(overrides)
    return Settings(_env_file=None, **values)


def _endpoints() -> GatewayEndpoints:
    return GatewayEndpoints(
        create="https://gw.test/v2/create",
        query="https://gw.test/v2/query",
        refund="https://gw.test/v2/refund",
    )


class TestSettings:
    """Test suite for Settings validation."""

    @pytest.mark.unit
    def test_identical_zalopay_keys_rejected(self) -> None:
        with pytest.raises(ValueError, match="must be different"):
            _settings(zalopay_key1="same", zalopay_key2="same")

    @pytest.mark.unit
    def test_stripe_key_format(self) -> None:
        with pytest.raises(ValueError, match="Stripe secret key"):
            _settings(stripe_secret_key="pk_test_wrong")

        assert _settings(stripe_secret_key="sk_live_abc").is_test_mode is False
        assert _settings().is_test_mode is True

    @pytest.mark.unit
    def test_log_level_is_normalized(self) -> None:
        assert _settings(log_level="debug").log_level == "DEBUG"
        with pytest.raises(ValueError):
            _settings(log_level="verbose")

    @pytest.mark.unit
    def test_audit_hour_bounds(self) -> None:
        with pytest.raises(ValueError):
            _settings(audit_hour=24)

    @pytest.mark.unit
    def test_retry_attempts_must_be_positive(self) -> None:
        with pytest.raises(ValueError):
            _settings(gateway_retry_max_attempts=0)

    @pytest.mark.unit
    def test_operator_roles(self) -> None:
        settings = _settings(operator_roles="admin, support ,")
        assert settings.get_operator_roles() == frozenset({"admin", "support"})

    @pytest.mark.unit
    def test_allowed_origins(self) -> None:
        settings = _settings(allowed_origins="https://a.test, https://b.test")
        assert settings.get_allowed_origins_list() == ["https://a.test", "https://b.test"]

    @pytest.mark.unit
    def test_zalopay_gateway(self) -> None:
        settings = _settings(
            zalopay_callback_url="https://api.test/zalopay/callback",
            donation_min_amount=2_000,
            gateway_retry_max_attempts=5,
        )

        gateway = settings.zalopay_gateway()

        assert gateway.app_id == "2553"
        assert gateway.outbound_signing_key == "outbound-key"
        assert gateway.inbound_verification_key == "inbound-key"
        assert gateway.endpoints.create == settings.zalopay_create_endpoint
        assert gateway.min_amount == 2_000
        assert gateway.currency == "VND"
        assert gateway.callback_url == "https://api.test/zalopay/callback"
        assert gateway.retry_max_attempts == 5


class TestGatewayConfig:
    """Test suite for the immutable gateway configuration."""

    @pytest.mark.unit
    def test_keys_must_differ(self) -> None:
        with pytest.raises(ValueError, match="must differ"):
            GatewayConfig(
                app_id="1",
                outbound_signing_key="k",
                inbound_verification_key="k",
                endpoints=_endpoints(),
            )

    @pytest.mark.unit
    def test_amount_bounds(self) -> None:
        with pytest.raises(ValueError, match="amount bounds"):
            GatewayConfig(
                app_id="1",
                outbound_signing_key="a",
                inbound_verification_key="b",
                endpoints=_endpoints(),
                min_amount=10_000,
                max_amount=5_000,
            )

    @pytest.mark.unit
    def test_frozen(self) -> None:
        config = GatewayConfig(
            app_id="1",
            outbound_signing_key="a",
            inbound_verification_key="b",
            endpoints=_endpoints(),
        )
        with pytest.raises(ValueError):
            config.app_id = "2"
