"""
Pytest Configuration and Centralized Fixtures.

Provides reusable fixtures for testing:
- In-memory SQLite database (aiosqlite) with the full schema and seeded policies
- Account and refreshable entity factories
- Fake payment provider and metrics fetcher
- API client with auth and database overrides
"""

import os
from collections.abc import AsyncGenerator, Awaitable, Callable
from datetime import datetime, timedelta
from typing import Any
from uuid import UUID, uuid4

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import StaticPool

# Set required environment variables BEFORE importing app modules
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ.setdefault("RUN_MIGRATIONS_ON_STARTUP", "false")
os.environ.setdefault("REFRESH_WORKER_ENABLED", "false")
os.environ.setdefault("AUTH_JWT_SECRET", "test-secret-key-for-jwt-signing-min-32-chars")
os.environ.setdefault("STRIPE_API_KEY", "sk_test_fake_key")
os.environ.setdefault("STRIPE_WEBHOOK_SECRET", "whsec_test_fake_secret")
os.environ.setdefault("STRIPE_PRICE_PRO", "price_pro_test")
os.environ.setdefault("STRIPE_PRICE_ENTERPRISE", "price_enterprise_test")

from app.db.models import Account, Base, RefreshableEntity
from app.exceptions import ExternalFetchFailure
from app.models.api import Plan, RefreshMode, Role, SubscriptionStatus
from app.models.domain import Principal
from app.services.policies import PolicyService
from tests.helpers import FIXED_NOW, FakeFetcher, FakePaymentProvider

TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"


# ============================================================================
# Database Fixtures
# ============================================================================


@pytest.fixture
async def engine() -> AsyncGenerator[AsyncEngine, None]:
    """Fresh in-memory database per test, schema created from the ORM metadata."""
    test_engine = create_async_engine(
        TEST_DATABASE_URL,
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield test_engine

    await test_engine.dispose()


@pytest.fixture
async def session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    factory = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    async with factory() as session:
        await PolicyService(session).ensure_default_policies()
    return factory


@pytest.fixture
async def db(
    session_factory: async_sessionmaker[AsyncSession],
) -> AsyncGenerator[AsyncSession, None]:
    async with session_factory() as session:
        yield session


# ============================================================================
# Factories
# ============================================================================


@pytest.fixture
def make_account(
    session_factory: async_sessionmaker[AsyncSession],
) -> Callable[..., Awaitable[Account]]:
    """Insert an account row directly and return it."""

    async def _make(
        external_id: str | None = None,
        email: str | None = "user@example.com",
        role: Role = Role.USER,
        effective_plan: Plan = Plan.FREE,
        **fields: Any,
    ) -> Account:
        account = Account(
            external_id=external_id or f"user-{uuid4().hex[:8]}",
            email=email,
            role=role,
            effective_plan=effective_plan,
            **fields,
        )
        async with session_factory() as session:
            session.add(account)
            await session.commit()
        return account

    return _make


@pytest.fixture
def make_entity(
    session_factory: async_sessionmaker[AsyncSession],
) -> Callable[..., Awaitable[RefreshableEntity]]:
    """Insert a refreshable entity; scheduled entities default to due one hour ago."""

    async def _make(
        account_id: UUID,
        refresh_mode: RefreshMode = RefreshMode.MANUAL,
        next_refresh_at: datetime | None = None,
        platform: str = "instagram",
        username: str | None = None,
        **fields: Any,
    ) -> RefreshableEntity:
        if refresh_mode == RefreshMode.SCHEDULED and next_refresh_at is None:
            next_refresh_at = FIXED_NOW - timedelta(hours=1)
        entity = RefreshableEntity(
            account_id=account_id,
            platform=platform,
            username=username or f"creator_{uuid4().hex[:6]}",
            refresh_mode=refresh_mode,
            next_refresh_at=next_refresh_at,
            **fields,
        )
        async with session_factory() as session:
            session.add(entity)
            await session.commit()
        return entity

    return _make


@pytest.fixture
def payment_provider() -> FakePaymentProvider:
    return FakePaymentProvider()


@pytest.fixture
def fetcher() -> FakeFetcher:
    return FakeFetcher()


@pytest.fixture
def failing_fetcher() -> FakeFetcher:
    return FakeFetcher(
        {"broken": ExternalFetchFailure("HTTP 503 for instagram/broken")},
    )


@pytest.fixture
def clock() -> Callable[[], datetime]:
    return lambda: FIXED_NOW


# ============================================================================
# API Client Fixtures
# ============================================================================


@pytest.fixture
def principal() -> Principal:
    return Principal(external_id="user-api", email="api@example.com")


@pytest.fixture
def app(
    session_factory: async_sessionmaker[AsyncSession],
    principal: Principal,
    payment_provider: FakePaymentProvider,
) -> Any:
    """FastAPI app with database, auth and billing provider overridden."""
    from app.api.dependencies import get_payment_provider, get_principal
    from app.db.session import get_read_db, get_write_db
    from app.main import app as fastapi_app

    async def override_db() -> AsyncGenerator[AsyncSession, None]:
        async with session_factory() as session:
            yield session

    async def override_principal() -> Principal:
        return principal

    fastapi_app.dependency_overrides[get_write_db] = override_db
    fastapi_app.dependency_overrides[get_read_db] = override_db
    fastapi_app.dependency_overrides[get_principal] = override_principal
    fastapi_app.dependency_overrides[get_payment_provider] = lambda: payment_provider

    yield fastapi_app

    fastapi_app.dependency_overrides.clear()


@pytest.fixture
async def client(app: Any) -> AsyncGenerator[AsyncClient, None]:
    async with AsyncClient(
        transport=ASGITransport(app=app, raise_app_exceptions=False),
        base_url="http://test",
    ) as async_client:
        yield async_client


@pytest.fixture
async def admin_account(make_account: Callable[..., Awaitable[Account]], principal: Principal):
    """The API principal's account, with role admin."""
    return await make_account(external_id=principal.external_id, role=Role.ADMIN)


@pytest.fixture
async def pro_subscriber(make_account: Callable[..., Awaitable[Account]]) -> Account:
    return await make_account(
        subscription_plan=Plan.PRO,
        subscription_status=SubscriptionStatus.ACTIVE,
        subscription_id="sub_existing",
        billing_customer_id="cus_existing",
        effective_plan=Plan.PRO,
        current_period_end=FIXED_NOW + timedelta(days=10),
    )

