"""
Pytest configuration and fixtures.

Settings are read from the environment on first use, so the test values
are exported before any `crowdfund` module is imported.
"""
import functools
import json
import os
import tempfile
import time
import uuid
from typing import Any, AsyncGenerator, Callable, Dict, List, Optional, Tuple
from urllib.parse import parse_qsl

_TEST_DIR = tempfile.mkdtemp(prefix="crowdfund-tests-")

os.environ.setdefault("ZALOPAY_APP_ID", "2553")
os.environ.setdefault("ZALOPAY_KEY1", "test-outbound-key1")
os.environ.setdefault("ZALOPAY_KEY2", "test-inbound-key2")
os.environ.setdefault("STRIPE_SECRET_KEY", "sk_test_fake_key_for_testing")
os.environ.setdefault("STRIPE_PUBLISHABLE_KEY", "pk_test_fake_key_for_testing")
os.environ.setdefault("STRIPE_WEBHOOK_SECRET", "whsec_test_fake_secret")
os.environ.setdefault("DATABASE_URL", f"sqlite+aiosqlite:///{_TEST_DIR}/app.db")
os.environ.setdefault("JWT_SECRET_KEY", "test-jwt-secret")
os.environ.setdefault("APP_ENV", "test")

import httpx  # noqa: E402
import pytest  # noqa: E402
import pytest_asyncio  # noqa: E402
from jose import jwt  # noqa: E402
from sqlalchemy.ext.asyncio import (  # noqa: E402
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import NullPool  # noqa: E402
from tenacity import wait_none  # noqa: E402
from unittest.mock import AsyncMock  # noqa: E402

from crowdfund.config import GatewayConfig, GatewayEndpoints, get_settings  # noqa: E402
from crowdfund.core.campaigns import CampaignService  # noqa: E402
from crowdfund.core.reconciler import DonationReconciler  # noqa: E402
from crowdfund.database.models import Base, Campaign, CampaignStatus  # noqa: E402
from crowdfund.integrations.stripe_client import StripeClient  # noqa: E402
from crowdfund.integrations.zalopay_client import ZaloPayClient, compute_mac  # noqa: E402


def pytest_configure(config: Any) -> None:
    config.addinivalue_line("markers", "unit: fast tests without I/O")
    config.addinivalue_line("markers", "integration: tests against the database and API")
    config.addinivalue_line("markers", "race: concurrent delivery scenarios")


class FakeZaloPay:
    """
    In-process stand-in for the ZaloPay v2 API, served through httpx.MockTransport.

    Responses are configured per operation (``create``, ``query``, ``refund``)
    either as a dict or as a callable receiving the submitted form.
    """

    def __init__(self, config: GatewayConfig) -> None:
        self.config = config
        self.requests: List[Tuple[str, Dict[str, str]]] = []
        self.timeouts: set = set()
        self.status_codes: Dict[str, int] = {}
        self.responses: Dict[str, Any] = {
            "create": {
                "return_code": 1,
                "return_message": "Giao dịch thành công",
                "sub_return_code": 1,
                "order_url": "https://qcgateway.zalopay.vn/openinapp?order=abc",
                "zp_trans_token": "ACx7Kq2yP0",
                "order_token": "ACx7Kq2yP0",
            },
            "query": {
                "return_code": 3,
                "return_message": "Giao dịch đang xử lý",
                "is_processing": True,
                "amount": 0,
                "zp_trans_id": 0,
            },
            "refund": {
                "return_code": 1,
                "return_message": "Giao dịch thành công",
                "refund_id": 1234567,
            },
        }

    def _operation(self, url: str) -> str:
        for operation in ("create", "query", "refund"):
            if url == getattr(self.config.endpoints, operation):
                return operation
        raise AssertionError(f"Unexpected gateway URL {url}")

    def calls(self, operation: str) -> List[Dict[str, str]]:
        return [form for op, form in self.requests if op == operation]

    def handler(self, request: httpx.Request) -> httpx.Response:
        operation = self._operation(str(request.url))
        form = dict(parse_qsl(request.content.decode("utf-8")))
        self.requests.append((operation, form))

        if operation in self.timeouts:
            raise httpx.ReadTimeout("gateway timed out", request=request)
        if operation in self.status_codes:
            return httpx.Response(self.status_codes[operation], text="upstream error")

        response = self.responses[operation]
        if callable(response):
            response = response(form)
        return httpx.Response(200, json=response)


def signed_callback(
    config: GatewayConfig,
    transaction_code: str,
    amount: int,
    zp_trans_id: int = 240101000001,
    key: Optional[str] = None,
) -> Dict[str, str]:
    """Build a callback body the way the gateway signs it."""
    data = json.dumps(
        {
            "app_id": int(config.app_id),
            "app_trans_id": transaction_code,
            "app_time": int(time.time() * 1000),
            "app_user": "Nguyen Van A",
            "amount": amount,
            "embed_data": "{}",
            "item": "[]",
            "zp_trans_id": zp_trans_id,
            "server_time": int(time.time() * 1000),
            "channel": 38,
            "merchant_user_id": "rUPXXvFpMUw-8LfNnsZ4Ch1bF1yfg4ZjWZNYyJsU1vs",
            "user_fee_amount": 0,
            "discount_amount": 0,
        },
        separators=(",", ":"),
    )
    return {"data": data, "mac": compute_mac(key or config.inbound_verification_key, data)}


def make_token(user_id: str, role: str = "user") -> str:
    settings = get_settings()
    return jwt.encode(
        {"sub": user_id, "role": role},
        settings.jwt_secret_key,
        algorithm=settings.jwt_algorithm,
    )


def auth_headers(user_id: str, role: str = "user") -> Dict[str, str]:
    return {"Authorization": f"Bearer {make_token(user_id, role)}"}


@pytest.fixture
def sign_callback(gateway_config: GatewayConfig) -> Callable[..., Dict[str, str]]:
    return functools.partial(signed_callback, gateway_config)


@pytest.fixture
def auth() -> Callable[..., Dict[str, str]]:
    return auth_headers


@pytest.fixture
def gateway_config() -> GatewayConfig:
    """Gateway configuration pointing at the fake gateway."""
    return GatewayConfig(
        app_id="2553",
        outbound_signing_key="test-outbound-key1",
        inbound_verification_key="test-inbound-key2",
        endpoints=GatewayEndpoints(
            create="https://sb-openapi.zalopay.test/v2/create",
            query="https://sb-openapi.zalopay.test/v2/query",
            refund="https://sb-openapi.zalopay.test/v2/refund",
        ),
        timeout_seconds=2.0,
        min_amount=1000,
        max_amount=5_000_000,
    )


@pytest_asyncio.fixture
async def db_engine(tmp_path: Any) -> AsyncGenerator[AsyncEngine, Any]:
    """Fresh SQLite database per test."""
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'crowdfund.db'}",
        poolclass=NullPool,
        connect_args={"timeout": 30},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest.fixture
def session_factory(db_engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(db_engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture
async def test_db(
    session_factory: async_sessionmaker[AsyncSession],
) -> AsyncGenerator[AsyncSession, Any]:
    """Create test database session."""
    async with session_factory() as session:
        yield session
        await session.rollback()


@pytest.fixture
def fake_zalopay(gateway_config: GatewayConfig) -> FakeZaloPay:
    return FakeZaloPay(gateway_config)


@pytest_asyncio.fixture
async def zalopay_client(
    gateway_config: GatewayConfig, fake_zalopay: FakeZaloPay
) -> AsyncGenerator[ZaloPayClient, Any]:
    http_client = httpx.AsyncClient(transport=httpx.MockTransport(fake_zalopay.handler))
    client = ZaloPayClient(gateway_config, http_client=http_client, retry_wait=wait_none())
    yield client
    await http_client.aclose()


@pytest.fixture
def stripe_client() -> AsyncMock:
    """Stripe client double; tests set return values per call."""
    return AsyncMock(spec=StripeClient)


@pytest.fixture
def reconciler(
    gateway_config: GatewayConfig, zalopay_client: ZaloPayClient, stripe_client: AsyncMock
) -> DonationReconciler:
    return DonationReconciler(
        gateway_config, zalopay_client=zalopay_client, stripe_client=stripe_client
    )


@pytest.fixture
def campaign_factory(
    session_factory: async_sessionmaker[AsyncSession],
) -> Callable[..., Any]:
    async def _create(
        host_id: str = "host-1",
        name: str = "School library",
        target_amount: int = 50_000_000,
    ) -> Campaign:
        async with session_factory() as session:
            return await CampaignService().create(
                session,
                host_id=host_id,
                name=name,
                description="Books for the village school",
                campaign_type="education",
                target_amount=target_amount,
                status=CampaignStatus.ACTIVE,
            )

    return _create


@pytest_asyncio.fixture
async def campaign(campaign_factory: Callable[..., Any]) -> Campaign:
    return await campaign_factory()


@pytest.fixture
def create_donation(
    reconciler: DonationReconciler,
    session_factory: async_sessionmaker[AsyncSession],
) -> Callable[..., Any]:
    """Create a PENDING mobile-wallet donation through the reconciler."""

    async def _create(
        campaign_id: uuid.UUID,
        amount: int = 50_000,
        donor_id: str = "donor-1",
        is_anonymous: bool = False,
    ) -> Any:
        async with session_factory() as session:
            return await reconciler.create_order(
                session,
                amount=amount,
                donor_id=donor_id,
                campaign_id=campaign_id,
                donor_name="Nguyen Van A",
                is_anonymous=is_anonymous,
            )

    return _create


@pytest.fixture
def credit(
    reconciler: DonationReconciler,
    gateway_config: GatewayConfig,
    session_factory: async_sessionmaker[AsyncSession],
) -> Callable[..., Any]:
    """Deliver a verified callback for a transaction code."""

    async def _credit(transaction_code: str, amount: int, zp_trans_id: int = 240101000001) -> Any:
        body = signed_callback(gateway_config, transaction_code, amount, zp_trans_id)
        async with session_factory() as session:
            return await reconciler.handle_callback(session, body["data"], body["mac"])

    return _credit


@pytest.fixture
def load_campaign(session_factory: async_sessionmaker[AsyncSession]) -> Callable[..., Any]:
    async def _load(campaign_id: uuid.UUID) -> Campaign:
        async with session_factory() as session:
            return await CampaignService().get(session, campaign_id)

    return _load


@pytest.fixture
def load(session_factory: async_sessionmaker[AsyncSession]) -> Callable[..., Any]:
    """Load a donation by transaction code from a fresh session."""
    from crowdfund.core.ledger import load_donation

    async def _load(transaction_code: str) -> Any:
        async with session_factory() as session:
            return await load_donation(session, transaction_code=transaction_code)

    return _load


@pytest_asyncio.fixture
async def client(
    session_factory: async_sessionmaker[AsyncSession],
    reconciler: DonationReconciler,
) -> AsyncGenerator[httpx.AsyncClient, Any]:
    """Create test HTTP client bound to the test database and gateways."""
    from crowdfund.api.main import app
    from crowdfund.api.routes import get_reconciler
    from crowdfund.database.connection import get_db

    async def _get_db() -> AsyncGenerator[AsyncSession, Any]:
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db] = _get_db
    app.dependency_overrides[get_reconciler] = lambda: reconciler

    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()
