import os
from collections.abc import AsyncGenerator
from datetime import UTC, datetime

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from guildpass.config.settings import AuthMode, Settings, get_settings
from guildpass.infra.database import Base, get_session, get_session_factory
from guildpass.main import create_app

# Import models to ensure they're registered
from guildpass.v1.accounts import models as account_models  # noqa: F401
from guildpass.v1.infra.jobs import models as job_models  # noqa: F401
from guildpass.v1.infra.jobs import registry_init  # noqa: F401
from guildpass.v1.mirror import models as mirror_models  # noqa: F401
from guildpass.v1.payments import models as payment_models  # noqa: F401
from guildpass.v1.role_sync import models as role_sync_models  # noqa: F401
from guildpass.v1.seat_audit import models as seat_audit_models  # noqa: F401

WORKER_TOKEN = "worker-test-token"
REPLAY_TOKEN = "replay-test-token"
WEBHOOK_SECRET = "whsec-test"


@pytest.fixture
def test_settings() -> Settings:
    return Settings(
        environment="development",
        debug=False,
        auth_mode=AuthMode.NONE,
        worker_api_token=WORKER_TOKEN,
        replay_token=REPLAY_TOKEN,
        sellapp_webhook_secret=WEBHOOK_SECRET,
        enable_sweeper=False,
        wake_stream_interval_ms=100,
    )


@pytest.fixture
async def test_engine():
    """Create a test database engine.

    Uses ``DATABASE_URL`` when it points at PostgreSQL, otherwise a shared
    in-memory SQLite database.
    """
    database_url = os.getenv("DATABASE_URL")

    if database_url and "postgresql" in database_url:
        engine = create_async_engine(database_url, echo=False)
    else:
        engine = create_async_engine(
            "sqlite+aiosqlite://",
            echo=False,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    # Clean up data after each test while preserving schema
    async with engine.begin() as conn:
        for table in reversed(Base.metadata.sorted_tables):
            await conn.execute(table.delete())
    await engine.dispose()


@pytest.fixture
def session_factory(test_engine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(
        bind=test_engine, class_=AsyncSession, expire_on_commit=False
    )


@pytest.fixture
async def db_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    """Create a fresh database session for each test."""
    async with session_factory() as session:
        yield session


@pytest.fixture
def app(session_factory, test_settings):
    """Create a test FastAPI application with test database and settings."""
    app = create_app()

    async def get_test_session():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_session] = get_test_session
    app.dependency_overrides[get_session_factory] = lambda: session_factory
    app.dependency_overrides[get_settings] = lambda: test_settings

    yield app

    app.dependency_overrides.clear()


@pytest.fixture
async def async_client(app) -> AsyncGenerator[AsyncClient, None]:
    """Create an async test client."""
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac


@pytest.fixture
def worker_headers() -> dict[str, str]:
    return {"Authorization": f"Bearer {WORKER_TOKEN}"}


@pytest.fixture
def replay_headers() -> dict[str, str]:
    return {"X-Replay-Token": REPLAY_TOKEN}


@pytest.fixture
def now() -> datetime:
    return datetime(2026, 3, 1, 12, 0, 0, tzinfo=UTC)
