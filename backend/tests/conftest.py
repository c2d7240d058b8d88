"""Pytest configuration and shared fixtures."""

import os
import tempfile
from collections.abc import AsyncGenerator

# Settings are read at import time; point them at throwaway values first.
os.environ["ENV"] = "test"
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///" + os.path.join(tempfile.gettempdir(), "scheduler-import.db")
os.environ.setdefault("JWT_SECRET", "test-jwt-secret")
os.environ.setdefault("CRON_SECRET", "test-cron-secret")
os.environ.setdefault("ADMIN_EMAILS", "ops@example.com")

import pytest  # noqa: E402
from httpx import ASGITransport, AsyncClient  # noqa: E402
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine  # noqa: E402
from sqlalchemy.pool import NullPool  # noqa: E402

from app.core.security import create_access_token  # noqa: E402
from app.db.base import Base, import_models  # noqa: E402
from app.db.session import get_db, get_session_factory  # noqa: E402
from app.main import create_app  # noqa: E402
from app.services.providers.service import get_executor_registry  # noqa: E402
from tests.helpers.seed import FakeExecutor, fake_registry  # noqa: E402


@pytest.fixture(scope="function")
async def session_factory(tmp_path) -> AsyncGenerator[async_sessionmaker[AsyncSession], None]:
    """Fresh SQLite file database per test; every session gets its own connection."""
    import_models()
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'scheduler.db'}",
        connect_args={"timeout": 30},
        poolclass=NullPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    await engine.dispose()


@pytest.fixture(scope="function")
async def db_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    """Async session on the per-test database."""
    async with session_factory() as session:
        yield session


@pytest.fixture
def executors():
    """Registry of fake executors that succeed immediately."""
    return fake_registry(FakeExecutor("openai"), FakeExecutor("perplexity"), FakeExecutor("gemini"))


@pytest.fixture
async def async_client(session_factory, executors) -> AsyncGenerator[AsyncClient, None]:
    """HTTP client against the app with the store and executors overridden."""
    app = create_app()

    async def override_get_db():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_session_factory] = lambda: session_factory
    app.dependency_overrides[get_executor_registry] = lambda: executors

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        yield client


@pytest.fixture
def cron_headers() -> dict[str, str]:
    return {"X-Cron-Secret": os.environ["CRON_SECRET"]}


@pytest.fixture
def admin_headers() -> dict[str, str]:
    token = create_access_token("admin-1", role="ADMIN", email="admin@example.com")
    return {"Authorization": f"Bearer {token}"}
