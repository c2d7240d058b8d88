"""Database engine configuration."""

from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine

from app.core.config import settings


def create_db_engine(database_url: str | None = None) -> AsyncEngine:
    """Create the async SQLAlchemy engine."""
    url = database_url or settings.DATABASE_URL
    if url.startswith("sqlite"):
        # Writers wait on the file lock instead of failing fast
        return create_async_engine(url, connect_args={"timeout": 30}, echo=False)
    return create_async_engine(
        url,
        pool_pre_ping=True,  # Verify connections before using
        pool_size=settings.DB_POOL_SIZE,
        max_overflow=settings.DB_MAX_OVERFLOW,
        echo=False,  # Set to True for SQL query logging
    )


# Global engine instance
engine = create_db_engine()
