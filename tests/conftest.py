"""Shared test configuration and fixtures.

Each test gets a fresh in-memory SQLite database. The billing components open
their own sessions, so they share one connection (StaticPool) with the
sessions the tests use to seed and inspect rows.
"""

from collections.abc import AsyncGenerator

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from reconciler.billing.container import BillingContainer, build_container
from reconciler.billing.stripe_client import ProviderClient
from reconciler.config import Settings
from reconciler.database import Base, get_db
from reconciler.main import app
from reconciler.models import Subscription, User
from factories import auth_headers_for, create_user
from stripe_payloads import WEBHOOK_SECRET

CRON_SECRET = "cron-test-secret"


# ---------------------------------------------------------------------------
# Database
# ---------------------------------------------------------------------------


@pytest_asyncio.fixture
async def engine() -> AsyncGenerator[AsyncEngine, None]:
    """In-memory database with all tables created."""
    engine = create_async_engine(
        "sqlite+aiosqlite://",
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


# ---------------------------------------------------------------------------
# Billing components
# ---------------------------------------------------------------------------


@pytest.fixture
def test_settings() -> Settings:
    """Settings isolated from any local .env file."""
    return Settings(
        _env_file=None,
        environment="test",
        jwt_secret_key="test-jwt-secret",
        stripe_secret_key="sk_test_dummy",
        stripe_webhook_secret=WEBHOOK_SECRET,
        stripe_pro_price_id="price_conf_pro",
        stripe_enterprise_s_price_id="price_conf_enterprise_s",
        cron_secret=CRON_SECRET,
        retry_max_attempts=5,
        retry_backoff_unit_seconds=60,
        retry_batch_size=50,
        event_retention_days=30,
        event_processing_timeout_seconds=5.0,
        provider_command_timeout_seconds=0.2,
    )


@pytest.fixture
def provider(test_settings: Settings) -> ProviderClient:
    return ProviderClient.from_settings(test_settings)


@pytest.fixture
def billing(
    test_settings: Settings,
    session_factory: async_sessionmaker[AsyncSession],
    provider: ProviderClient,
) -> BillingContainer:
    return build_container(test_settings, session_factory, provider)


# ---------------------------------------------------------------------------
# Users and subscriptions
# ---------------------------------------------------------------------------


@pytest_asyncio.fixture
async def owner(session_factory: async_sessionmaker[AsyncSession]) -> User:
    return await create_user(session_factory)


@pytest_asyncio.fixture
async def admin_user(session_factory: async_sessionmaker[AsyncSession]) -> User:
    return await create_user(session_factory, role="admin")


@pytest_asyncio.fixture
async def subscription(billing: BillingContainer, owner: User) -> Subscription:
    """The owner's freshly provisioned ``incomplete`` subscription."""
    return await billing.core.provision(owner.id)


@pytest.fixture
def owner_headers(owner: User) -> dict[str, str]:
    return auth_headers_for(owner)


@pytest.fixture
def admin_headers(admin_user: User) -> dict[str, str]:
    return auth_headers_for(admin_user)


# ---------------------------------------------------------------------------
# HTTP client
# ---------------------------------------------------------------------------


@pytest_asyncio.fixture
async def client(
    session_factory: async_sessionmaker[AsyncSession],
    billing: BillingContainer,
) -> AsyncGenerator[AsyncClient, None]:
    """An httpx AsyncClient wired to the test database and billing components."""

    async def override_get_db() -> AsyncGenerator[AsyncSession, None]:
        async with session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    app.dependency_overrides[get_db] = override_get_db
    # ASGITransport does not run the lifespan, so install the components here
    app.state.billing = billing

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://testserver") as ac:
        yield ac

    app.dependency_overrides.clear()
    app.state.billing = None
