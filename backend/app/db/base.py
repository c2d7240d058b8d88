"""Database base and model registry."""

from sqlalchemy.orm import DeclarativeBase


class Base(DeclarativeBase):
    """Base class for all database models."""

    pass


def import_models() -> None:
    """Import all models so Base.metadata sees every table."""
    import app.models  # noqa: F401
