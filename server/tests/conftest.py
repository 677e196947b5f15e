"""Test configuration and fixtures."""

import os

os.environ.setdefault("ENVIRONMENT", "test")
os.environ.setdefault("WORKERS_ENABLED", "false")
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")

import pytest  # noqa: E402
import pytest_asyncio  # noqa: E402
from httpx import ASGITransport, AsyncClient  # noqa: E402
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker  # noqa: E402

from gearbook.core.clock import FrozenClock  # noqa: E402
from gearbook.core.database import Base, build_engine  # noqa: E402
from gearbook.core.dependencies import get_clock, get_db  # noqa: E402
from gearbook.models import *  # noqa: F403,E402 - Import all models
from gearbook.services.resource_service import ResourceService  # noqa: E402
from tests.support import GUILD_ID, NOW  # noqa: E402


@pytest_asyncio.fixture(scope="function")
async def test_engine(tmp_path):
    """
    File-backed SQLite engine with the production locking setup.

    A file instead of :memory: so separate sessions (and connections) see
    the same data, which the concurrency tests rely on.
    """
    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'gearbook_test.db'}")

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest.fixture
def session_factory(test_engine):
    return async_sessionmaker(
        test_engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


@pytest_asyncio.fixture(scope="function")
async def test_session(session_factory):
    """Create a test database session."""
    async with session_factory() as session:
        yield session


@pytest.fixture
def clock():
    return FrozenClock(NOW)


@pytest_asyncio.fixture
async def guild(test_session, clock):
    return await ResourceService(test_session, clock).ensure_guild(GUILD_ID, "Makerspace")


@pytest_asyncio.fixture
async def camera_class(test_session, clock, guild):
    return await ResourceService(test_session, clock).create_class(GUILD_ID, "Cameras")


@pytest_asyncio.fixture
async def resource(test_session, clock, camera_class):
    """A camera in the Cameras class."""
    return await ResourceService(test_session, clock).create_resource(GUILD_ID, "Camera 1", camera_class.id)


@pytest_asyncio.fixture
async def plain_resource(test_session, clock, guild):
    """A resource without a class."""
    return await ResourceService(test_session, clock).create_resource(GUILD_ID, "Soldering Station")


@pytest_asyncio.fixture(scope="function")
async def test_app(test_session, clock):
    """The real application with the database and clock swapped for test doubles."""
    from gearbook.main import create_app

    app = create_app()

    async def override_get_db():
        yield test_session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_clock] = lambda: clock

    yield app

    app.dependency_overrides.clear()


@pytest_asyncio.fixture(scope="function")
async def test_client(test_app):
    """Create a test HTTP client."""
    transport = ASGITransport(app=test_app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client

