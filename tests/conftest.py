"""
Shared fixtures: in-memory SQLite database, users, plans and services.
"""

from datetime import UTC, datetime, timedelta
from decimal import Decimal

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

import broadbandx.billing.catalog.entities  # noqa: F401
import broadbandx.billing.subscriptions.entities  # noqa: F401
from broadbandx.auth.core import ADMIN_ROLE, UserInfo
from broadbandx.billing.catalog.models import (
    DataLimit,
    DataUnit,
    Plan,
    PlanCreateRequest,
    PlanFeatures,
    PlanPricingInput,
    PlanSpeed,
    PlanStatus,
)
from broadbandx.billing.catalog.service import PlanService
from broadbandx.billing.subscriptions.service import SubscriptionService
from broadbandx.db import Base
from broadbandx.settings import BillingSettings

NOW = datetime(2024, 3, 1, 12, 0, tzinfo=UTC)


class FrozenClock:
    """Injectable clock that only moves when told to."""

    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


# ==================== Database ====================


@pytest_asyncio.fixture
async def async_db_engine():
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,  # Required for SQLite in-memory async
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    try:
        yield engine
    finally:
        await engine.dispose()


@pytest_asyncio.fixture
async def async_session(async_db_engine):
    """Async database session."""
    session_maker = async_sessionmaker(async_db_engine, expire_on_commit=False, autoflush=False)
    async with session_maker() as session:
        try:
            yield session
        finally:
            await session.rollback()


# ==================== Users ====================


@pytest.fixture
def customer() -> UserInfo:
    return UserInfo(user_id="user-1", email="alice@example.com", roles=["customer"])


@pytest.fixture
def other_customer() -> UserInfo:
    return UserInfo(user_id="user-2", email="bob@example.com", roles=["customer"])


@pytest.fixture
def admin_user() -> UserInfo:
    return UserInfo(user_id="admin-1", email="ops@example.com", roles=[ADMIN_ROLE])


# ==================== Services ====================


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock(NOW)


@pytest.fixture
def billing_settings() -> BillingSettings:
    return BillingSettings()


@pytest.fixture
def plan_service(async_session, billing_settings) -> PlanService:
    return PlanService(async_session, billing_settings=billing_settings)


@pytest.fixture
def subscription_service(async_session, plan_service, billing_settings, clock):
    return SubscriptionService(
        async_session, plan_service=plan_service, billing_settings=billing_settings, clock=clock
    )


# ==================== Plans ====================


@pytest.fixture
def make_plan(plan_service):
    """Factory creating catalog plans from shorthand arguments."""

    async def _make(name: str, monthly: str, **kwargs) -> Plan:
        return await plan_service.create_plan(build_plan_request(name, monthly, **kwargs))

    return _make


def build_plan_request(
    name: str,
    monthly: str,
    *,
    yearly: str | None = None,
    currency: str = "USD",
    data_limit_gb: str | None = None,
    status: PlanStatus = PlanStatus.ACTIVE,
) -> PlanCreateRequest:
    data_limit = DataLimit()
    if data_limit_gb is not None:
        data_limit = DataLimit(amount=Decimal(data_limit_gb), unit=DataUnit.GB, unlimited=False)
    return PlanCreateRequest(
        name=name,
        pricing=PlanPricingInput(
            monthly=Decimal(monthly),
            yearly=Decimal(yearly) if yearly is not None else None,
            currency=currency,
        ),
        features=PlanFeatures(speed=PlanSpeed(download=100, upload=20), data_limit=data_limit),
        status=status,
    )


@pytest_asyncio.fixture
async def basic_plan(plan_service) -> Plan:
    """$30/month, 500 GB allowance."""
    return await plan_service.create_plan(
        build_plan_request("Basic 100", "30.00", data_limit_gb="500")
    )


@pytest_asyncio.fixture
async def premium_plan(plan_service) -> Plan:
    """$60/month, unlimited."""
    return await plan_service.create_plan(build_plan_request("Premium 500", "60.00"))


@pytest_asyncio.fixture
async def economy_plan(plan_service) -> Plan:
    """$20/month, 100 GB allowance."""
    return await plan_service.create_plan(
        build_plan_request("Economy 50", "20.00", data_limit_gb="100")
    )


@pytest_asyncio.fixture
async def retired_plan(plan_service) -> Plan:
    return await plan_service.create_plan(
        build_plan_request("Legacy Fiber", "90.00", status=PlanStatus.DEPRECATED)
    )


@pytest_asyncio.fixture
async def euro_plan(plan_service) -> Plan:
    return await plan_service.create_plan(build_plan_request("Euro Fiber", "80.00", currency="EUR"))
