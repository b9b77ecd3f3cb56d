"""Async SQLAlchemy engine, declarative base and session factory.

Provides:
- Base: Declarative base for the change queue, sync cursors and accounting entities
- get_engine(): Lazily created async engine singleton
- get_session_factory(): async_sessionmaker bound to the engine
- init_db() / close_db(): create tables on startup, dispose the pool on shutdown
"""

from __future__ import annotations

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase

from src.app.config import get_settings

# ── Module-level engine (lazy init) ────────────────────────────────────────

_engine: AsyncEngine | None = None
_session_factory: async_sessionmaker[AsyncSession] | None = None


def get_engine() -> AsyncEngine:
    """Get or create the async engine singleton."""
    global _engine
    if _engine is None:
        settings = get_settings()
        if settings.DATABASE_URL.startswith("sqlite"):
            _engine = create_async_engine(settings.DATABASE_URL, echo=False)
        else:
            _engine = create_async_engine(
                settings.DATABASE_URL,
                pool_size=10,
                max_overflow=5,
                pool_pre_ping=True,
                echo=False,
            )
    return _engine


# ── Declarative Base ────────────────────────────────────────────────────────


class Base(DeclarativeBase):
    """Base class for all persisted sync and accounting models."""


# ── Session Factory ─────────────────────────────────────────────────────────


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Build a session factory for the given engine.

    expire_on_commit=False so entities stay readable after the per-entry
    transaction commits.
    """
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    """Get or create the session factory bound to the engine singleton."""
    global _session_factory
    if _session_factory is None:
        _session_factory = create_session_factory(get_engine())
    return _session_factory


# ── Database Initialization ─────────────────────────────────────────────────


async def init_db(engine: AsyncEngine | None = None) -> None:
    """Create all tables if they don't exist."""
    # Model modules register their tables on Base.metadata at import time
    import src.app.accounting.models  # noqa: F401
    import src.app.sync.models  # noqa: F401

    engine = engine or get_engine()
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def close_db() -> None:
    """Dispose of the engine and close all connections."""
    global _engine, _session_factory
    if _engine:
        await _engine.dispose()
        _engine = None
        _session_factory = None
