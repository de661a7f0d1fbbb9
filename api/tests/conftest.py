"""
Shared test fixtures for the newsletter API tests.

Provides database session management, test clients, and publisher fixtures.
Tests that need PostgreSQL are skipped when the test database is unreachable.
"""

import socket
from collections.abc import AsyncGenerator
from typing import Any

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

from newsletter.config import settings
from newsletter.database import Base, get_db
from newsletter.main import app
from newsletter.middleware.rate_limit import reset_limiter

# Import models so they're registered with Base.metadata before table creation
from newsletter.auth.api_key import create_publisher
from newsletter.models.subscription import CONFIRMED, PENDING_CONFIRMATION, Subscription

# Test database URL (uses separate test database)
TEST_DATABASE_URL = settings.test_database_url

# NullPool: every session gets its own connection, so concurrent sessions
# really are concurrent transactions
test_engine = create_async_engine(
    TEST_DATABASE_URL,
    poolclass=NullPool,
    echo=False,
)

TestSessionLocal = async_sessionmaker(
    bind=test_engine,
    class_=AsyncSession,
    expire_on_commit=False,
    autoflush=False,
)


def _database_reachable() -> bool:
    url = make_url(TEST_DATABASE_URL)
    try:
        with socket.create_connection((url.host or "localhost", url.port or 5432), timeout=2):
            return True
    except OSError:
        return False


@pytest.fixture(scope="session")
def database_available() -> bool:
    """Whether the PostgreSQL test database can be reached."""
    return _database_reachable()


# --- Rate Limiter Reset Fixture ---


@pytest.fixture(autouse=True)
def reset_rate_limiter():
    """Reset rate limiter before each test to ensure test isolation."""
    reset_limiter()
    yield


# --- Database Fixtures ---


@pytest_asyncio.fixture(scope="function")
async def db_session(database_available: bool) -> AsyncGenerator[AsyncSession, None]:
    """
    Create tables before each test function, drop after.
    Provides isolated database state per test.
    """
    if not database_available:
        pytest.skip(f"PostgreSQL test database not reachable at {TEST_DATABASE_URL}")

    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)

    async with TestSessionLocal() as session:
        yield session
        await session.rollback()

    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)


@pytest.fixture
def session_factory(db_session: AsyncSession) -> async_sessionmaker[AsyncSession]:
    """Session factory for code that opens its own transactions (worker, services)."""
    return TestSessionLocal


@pytest_asyncio.fixture(scope="function")
async def async_client(db_session: AsyncSession) -> AsyncGenerator[AsyncClient, None]:
    """
    Async HTTP client configured for testing.

    Each request gets its own session, like get_db, so concurrent requests
    run in separate transactions.
    """

    async def override_get_db():
        async with TestSessionLocal() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    app.dependency_overrides[get_db] = override_get_db

    transport = ASGITransport(app=app)
    async with AsyncClient(
        transport=transport,
        base_url="http://test",
        follow_redirects=False,
    ) as client:
        yield client

    app.dependency_overrides.clear()


# --- Authentication Helper Fixtures ---


@pytest.fixture
def auth_headers():
    """Factory fixture for creating X-API-Key headers."""

    def _auth_headers(api_key: str) -> dict[str, str]:
        return {"X-API-Key": api_key}

    return _auth_headers


# --- User Fixtures ---


async def _create_user(db_session: AsyncSession, username: str) -> dict[str, Any]:
    """Helper to create a publisher with an API key in the database."""
    user, issued = await create_publisher(db_session, username, key_name="Test key")
    return {
        "user_id": user.id,
        "username": user.username,
        "api_key": issued.plaintext,
    }


@pytest_asyncio.fixture
async def test_user(db_session: AsyncSession) -> dict[str, Any]:
    """Create a publisher with an API key. Returns user data and plaintext key."""
    return await _create_user(db_session, username="publisher")


@pytest_asyncio.fixture
async def second_user(db_session: AsyncSession) -> dict[str, Any]:
    """Create a second publisher for fingerprint scoping tests."""
    return await _create_user(db_session, username="second_publisher")


# --- Subscriber Fixtures ---


@pytest.fixture
def add_subscribers(db_session: AsyncSession):
    """Factory fixture inserting confirmed and unconfirmed subscribers."""

    async def _add_subscribers(
        confirmed: list[str] = (),
        pending: list[str] = (),
    ) -> None:
        for email in confirmed:
            db_session.add(Subscription(email=email, name=email.split("@")[0], status=CONFIRMED))
        for email in pending:
            db_session.add(
                Subscription(email=email, name=email.split("@")[0], status=PENDING_CONFIRMATION)
            )
        await db_session.commit()

    return _add_subscribers


# --- Utility Fixtures ---


@pytest.fixture
def idempotency_key():
    """Generate a unique idempotency key for testing."""
    import secrets

    def _idempotency_key(prefix: str = "test") -> str:
        return f"{prefix}-{secrets.token_hex(16)}"

    return _idempotency_key
