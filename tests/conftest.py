"""Shared fixtures.

Persistence tests run against an in-memory SQLite database through
aiosqlite. SQLite ignores ``FOR UPDATE``, so these fixtures cover the
transactional and conditional-update logic. Tasks gathered on the
shared connection interleave at each await, which is enough to race
duplicate webhook deliveries and refund approvals.
"""

from collections.abc import AsyncIterator
from decimal import Decimal

import httpx
import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from cardvault.api import dependencies
from cardvault.domain.principal import Principal, Role
from cardvault.infrastructure import models  # noqa: F401  registers tables
from cardvault.infrastructure.cache import RecordingCacheInvalidator, get_cache_invalidator
from cardvault.infrastructure.catalog import CatalogProduct, InMemoryCatalog, get_catalog
from cardvault.infrastructure.clock import ManualClock, SweepThrottle
from cardvault.infrastructure.config import settings
from cardvault.infrastructure.database import Base
from cardvault.infrastructure.gateway_client import (
    GatewayConfig,
    PaymentGatewayClient,
    get_gateway_client,
)
from cardvault.main import app

from helpers import MERCHANT_PID, MERCHANT_SECRET, PRODUCT_ID, START


# ============================================================================
# Database
# ============================================================================


@pytest_asyncio.fixture
async def engine() -> AsyncIterator[AsyncEngine]:
    """Fresh in-memory database per test."""
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


# ============================================================================
# Collaborators
# ============================================================================


@pytest.fixture
def clock() -> ManualClock:
    return ManualClock(START)


@pytest.fixture
def throttle(clock: ManualClock) -> SweepThrottle:
    return SweepThrottle(clock, interval_seconds=60)


@pytest.fixture
def cache() -> RecordingCacheInvalidator:
    return RecordingCacheInvalidator()


@pytest.fixture
def product() -> CatalogProduct:
    return CatalogProduct(
        id=PRODUCT_ID,
        name="Steam Wallet 10",
        price=Decimal("10.00"),
        min_quantity=1,
        max_quantity=5,
    )


@pytest.fixture
def catalog(product: CatalogProduct) -> InMemoryCatalog:
    return InMemoryCatalog([product])


@pytest.fixture
def gateway_config() -> GatewayConfig:
    return GatewayConfig(
        pid=MERCHANT_PID,
        secret=MERCHANT_SECRET,
        base_url="https://pay.example.com/epay",
        site_url="https://shop.example.com",
        max_attempts=3,
        backoff_seconds=0.0,
    )


class GatewayStub:
    """Scripted gateway API behind an httpx MockTransport."""

    def __init__(self) -> None:
        self.responses: list[httpx.Response] = []
        self.requests: list[httpx.Request] = []

    def reply(self, *responses: httpx.Response) -> None:
        self.responses.extend(responses)

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if not self.responses:
            return httpx.Response(200, json={"code": 1, "msg": "ok"})
        return self.responses.pop(0)


@pytest.fixture
def gateway_stub() -> GatewayStub:
    return GatewayStub()


@pytest.fixture
def gateway(gateway_config: GatewayConfig, gateway_stub: GatewayStub) -> PaymentGatewayClient:
    async def no_sleep(delay: float) -> None:
        return None

    return PaymentGatewayClient(
        config=gateway_config,
        transport=httpx.MockTransport(gateway_stub.handler),
        sleep=no_sleep,
    )


# ============================================================================
# Principals
# ============================================================================


@pytest.fixture
def buyer() -> Principal:
    return Principal(id="user-1", role=Role.BUYER, username="alice")


@pytest.fixture
def other_buyer() -> Principal:
    return Principal(id="user-2", role=Role.BUYER, username="bob")


@pytest.fixture
def admin() -> Principal:
    return Principal(id="admin-1", role=Role.ADMIN, username="root")


# ============================================================================
# HTTP API
# ============================================================================


@pytest_asyncio.fixture
async def api_client(
    session_factory, clock, throttle, cache, catalog, gateway
) -> AsyncIterator[httpx.AsyncClient]:
    """HTTP client for the app, wired to the test database and gateway stub."""
    app.dependency_overrides.update(
        {
            dependencies.get_session_factory: lambda: session_factory,
            dependencies.get_clock: lambda: clock,
            dependencies.get_sweep_throttle: lambda: throttle,
            get_cache_invalidator: lambda: cache,
            get_catalog: lambda: catalog,
            get_gateway_client: lambda: gateway,
        }
    )
    async with httpx.AsyncClient(
        transport=httpx.ASGITransport(app=app),
        base_url="http://testserver",
        headers={"Authorization": f"Bearer {settings.api_key}"},
    ) as client:
        yield client
    app.dependency_overrides.clear()
