"""Pytest configuration and fixtures for async testing."""
from typing import AsyncGenerator

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from marketplace import models  # noqa: F401  registers tables on the metadata
from marketplace.database import Base, enable_sqlite_savepoints
from marketplace.services.confirmation import ConfirmationLock, ConfirmationPresenter
from marketplace.services.payment_intent_gateway import PaymentIntentGateway
from marketplace.services.payment_method_service import PaymentMethodService
from utils.auth import TEST_USER_ID, bearer
from utils.fakes import FakeBackend, FakePaymentSheet, FakeStripeAdapter

# In-memory database shared by every connection of one test
TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"


@pytest_asyncio.fixture(scope="function")
async def test_engine() -> AsyncGenerator[AsyncEngine, None]:
    """
    Create a fresh database for each test.

    Yields:
        AsyncEngine: Engine with all tables created
    """
    engine = create_async_engine(
        TEST_DATABASE_URL,
        echo=False,
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    enable_sqlite_savepoints(engine)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await engine.dispose()


@pytest_asyncio.fixture(scope="function")
async def session_factory(test_engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(
        test_engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autocommit=False,
        autoflush=False,
    )


@pytest_asyncio.fixture(scope="function")
async def db_session(session_factory: async_sessionmaker[AsyncSession]) -> AsyncGenerator[AsyncSession, None]:
    """
    Create a database session for each test.

    Yields:
        AsyncSession: Database session for testing
    """
    async with session_factory() as session:
        yield session
        await session.rollback()


@pytest.fixture(scope="function")
def user_id() -> str:
    return TEST_USER_ID


@pytest.fixture(scope="function")
def fake_backend() -> FakeBackend:
    return FakeBackend()


@pytest_asyncio.fixture(scope="function")
async def backend(fake_backend: FakeBackend):
    """BackendClient wired to the in-memory backend."""
    client = fake_backend.client()
    yield client
    await client.aclose()


@pytest.fixture(scope="function")
def sheet() -> FakePaymentSheet:
    return FakePaymentSheet()


@pytest.fixture(scope="function")
def lock() -> ConfirmationLock:
    return ConfirmationLock()


@pytest.fixture(scope="function")
def presenter(sheet: FakePaymentSheet, lock: ConfirmationLock) -> ConfirmationPresenter:
    return ConfirmationPresenter(sheet, lock, timeout_seconds=1.0)


@pytest.fixture(scope="function")
def methods(db_session: AsyncSession, backend, presenter: ConfirmationPresenter) -> PaymentMethodService:
    return PaymentMethodService(db_session, backend, presenter)


@pytest.fixture(scope="function")
def gateway(backend) -> PaymentIntentGateway:
    return PaymentIntentGateway(backend)


# Backend API


@pytest.fixture(scope="function")
def stripe_adapter() -> FakeStripeAdapter:
    return FakeStripeAdapter()


@pytest.fixture(scope="function")
def auth_headers() -> dict[str, str]:
    return bearer()


@pytest_asyncio.fixture(scope="function")
async def async_client(
    db_session: AsyncSession,
    stripe_adapter: FakeStripeAdapter,
) -> AsyncGenerator[AsyncClient, None]:
    """
    Create an async HTTP client for the backend app.

    The database and Stripe dependencies are overridden; authentication is
    real and expects tokens from ``make_access_token``.

    Yields:
        AsyncClient: Async HTTP client for API testing
    """
    from marketplace.api.deps import get_db, get_stripe_adapter
    from marketplace.main import app

    async def override_get_db() -> AsyncGenerator[AsyncSession, None]:
        """Override database dependency to use test database."""
        yield db_session

    async def override_get_stripe_adapter() -> FakeStripeAdapter:
        return stripe_adapter

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_stripe_adapter] = override_get_stripe_adapter

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        yield client

    # Clean up
    app.dependency_overrides.clear()
