"""Shared test fixtures."""

import pytest
import pytest_asyncio

from app.config import Settings
from app.database import build_engine, build_session_factory, create_tables
from app.engine import reconciler
from app.gateway.mock_gateway import MockGateway


@pytest_asyncio.fixture
async def session_factory():
    """Fresh in-memory database for each test."""
    engine = build_engine("sqlite+aiosqlite:///:memory:")
    await create_tables(engine)

    yield build_session_factory(engine)

    await engine.dispose()


@pytest_asyncio.fixture
async def db_session(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def app_settings() -> Settings:
    return Settings(
        base_url="https://api.shop.test",
        frontend_url="https://shop.test",
        default_currency="KES",
        billing_country_code="KE",
        merchant_reference_prefix="BIPS",
    )


@pytest.fixture
def gateway() -> MockGateway:
    return MockGateway(failure_rate=0.0, latency_ms=0)


@pytest_asyncio.fixture
async def created_payment(db_session, gateway, app_settings):
    """A submitted, still pending payment: KES 1000 for Jane Doe."""
    request = reconciler.PaymentRequest(
        amount=1000,
        currency="KES",
        customer_email="a@b.com",
        customer_name="Jane Doe",
    )
    return await reconciler.create_payment(db_session, gateway, request, config=app_settings)
