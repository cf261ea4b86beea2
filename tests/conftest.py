"""Pytest configuration and shared fixtures.

Tests run against a throwaway SQLite file (aiosqlite) whose schema is
created from the models before each test and dropped after it. Sessions
in tests should be short-lived: an open SQLite transaction holds the
write lock until it ends.
"""

import os
import tempfile
import uuid
from collections.abc import AsyncGenerator

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession

_DB_DIR = tempfile.mkdtemp(prefix="kitakita-tests-")

# Configure the app BEFORE importing it
os.environ["TESTING"] = "true"
os.environ["DATABASE_URL"] = f"sqlite+aiosqlite:///{_DB_DIR}/test.db"
os.environ["SECRET_KEY"] = "test-secret-key-that-is-long-enough-1234"
os.environ["INTERNAL_API_KEY"] = "test-internal-key"
os.environ["TELEGRAM_BOT_TOKEN"] = "123456:TEST-TOKEN"
os.environ["TELEGRAM_POLLING_ENABLED"] = "false"
os.environ["STORAGE_RETRY_BACKOFF_SECONDS"] = "0"
os.environ["SQLITE_BUSY_TIMEOUT_SECONDS"] = "30"
os.environ["AI_PROVIDER"] = "gemini"
os.environ["GEMINI_API_KEY"] = "test-gemini-key"

from kitakita.config import settings  # noqa: E402

settings.testing = True

from kitakita.core.security import create_access_token  # noqa: E402
from kitakita.database import (  # noqa: E402
    get_engine,
    get_session_maker,
    reset_database,
)
from kitakita.main import app  # noqa: E402
from kitakita.models import Base, User  # noqa: E402
from kitakita.services.telegram_bot import reset_bot_cache  # noqa: E402

INTERNAL_HEADERS = {"X-Internal-Key": "test-internal-key"}


@pytest_asyncio.fixture(autouse=True)
async def database() -> AsyncGenerator[None, None]:
    """Create the schema for one test and drop it afterwards."""
    engine = get_engine()
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await reset_database()


@pytest.fixture(autouse=True)
def _reset_bot_state():
    reset_bot_cache()
    yield
    reset_bot_cache()


@pytest_asyncio.fixture
async def db_session() -> AsyncGenerator[AsyncSession, None]:
    """A session for tests that stay inside one session."""
    async with get_session_maker()() as session:
        yield session


@pytest_asyncio.fixture
async def client() -> AsyncGenerator[AsyncClient, None]:
    """Provide an async HTTP client for testing the API."""
    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as ac:
        yield ac


async def create_test_user(
    email: str | None = None,
    display_name: str | None = "Juan",
    is_active: bool = True,
) -> User:
    """Insert a user in its own short session and return it."""
    user_id = f"user-{uuid.uuid4().hex[:12]}"
    async with get_session_maker()() as db:
        user = User(
            id=user_id,
            email=email or f"{user_id}@example.com",
            display_name=display_name,
            is_active=is_active,
        )
        db.add(user)
        await db.commit()
    return user


def auth_headers(user: User) -> dict[str, str]:
    """Bearer header for a user, signed with the test secret."""
    token = create_access_token(user.id, user.email)
    return {"Authorization": f"Bearer {token}"}


@pytest_asyncio.fixture
async def user() -> User:
    return await create_test_user(email="juan@example.com")


@pytest_asyncio.fixture
async def other_user() -> User:
    return await create_test_user(email="maria@example.com", display_name="Maria")
