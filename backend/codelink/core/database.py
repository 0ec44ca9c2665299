"""Database configuration and session management."""

from datetime import datetime

from sqlalchemy import DateTime, create_engine, func
from sqlalchemy.engine import Engine
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, sessionmaker

from codelink.core.config import settings

# One pooled engine per database URL, created on first use
_engines: dict[str, Engine] = {}


def get_sync_engine(database_url: str | None = None, echo: bool | None = None) -> Engine:
    """Return the pooled engine for a database URL, creating it once.

    Falls back to the application settings when no URL is given.
    """
    url = database_url or settings.database_url
    engine = _engines.get(url)
    if engine is None:
        engine = create_engine(
            url,
            echo=settings.debug if echo is None else echo,
            future=True,
            pool_pre_ping=True,
        )
        _engines[url] = engine
    return engine


def get_session_factory(database_url: str | None = None, echo: bool | None = None) -> sessionmaker:
    """Get a session factory bound to the engine for ``database_url``."""
    return sessionmaker(
        bind=get_sync_engine(database_url, echo),
        expire_on_commit=False,
        autoflush=False,
    )


class Base(DeclarativeBase):
    """Declarative base; every catalog table records when rows were loaded and refreshed."""

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )


def close_db() -> None:
    """Dispose of pooled connections for every engine."""
    for engine in _engines.values():
        engine.dispose()
    _engines.clear()
