"""Database session management."""

from collections.abc import AsyncGenerator

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.db.engine import engine

# Create session factory
AsyncSessionLocal = async_sessionmaker(
    bind=engine,
    class_=AsyncSession,
    autoflush=False,
    expire_on_commit=False,  # Prevent lazy loading issues
)


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """Dependency to get database session."""
    async with AsyncSessionLocal() as db:
        yield db


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    """Dependency for operations that open their own sessions (workers, sweeps)."""
    return AsyncSessionLocal
