"""
Engine, session factory and declarative base.

The listener threads and the HTTP glue share SessionLocal; each store call
opens and closes its own session.
"""

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker, DeclarativeBase
from sqlalchemy.pool import StaticPool

from lender_inbox.config import get_settings


def build_engine(url: str, echo: bool = False) -> Engine:
    """
    Create an engine for the given URL.

    In-memory SQLite keeps a single connection so every thread sees the
    same database.
    """
    if url.startswith("sqlite"):
        options = {"connect_args": {"check_same_thread": False}}
        if url in ("sqlite://", "sqlite:///:memory:"):
            options["poolclass"] = StaticPool
        return create_engine(url, echo=echo, **options)

    return create_engine(
        url,
        echo=echo,  # Set True for SQL debugging
        pool_pre_ping=True  # Verify connections before use
    )


engine = build_engine(get_settings().database_url)

SessionLocal = sessionmaker(
    bind=engine,
    autoflush=False,
    autocommit=False
)


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy models."""
    pass


def create_tables(bind: Engine = engine) -> None:
    """Create any missing tables for the registered models."""
    # Importing the package registers every model on Base.metadata
    import lender_inbox.models  # noqa: F401
    Base.metadata.create_all(bind=bind)
