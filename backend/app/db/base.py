"""Declarative base, async engine and session factory for the prototypes table."""

from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase

from app.core.config import get_settings


class Base(DeclarativeBase):
    pass


_engine: AsyncEngine | None = None
_session_factory: async_sessionmaker[AsyncSession] | None = None


def build_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Session factory handed to PrototypeStore.

    Rows stay readable after commit so the recorder can hydrate responses
    without a second round trip.
    """
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


async def create_tables(engine: AsyncEngine) -> None:
    import app.db.models  # noqa: F401  (registers Prototype on Base.metadata)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def init_db(url: str | None = None) -> None:
    """Open the engine pool and create the prototypes table if it is missing."""
    global _engine, _session_factory

    if _engine is not None:
        return

    settings = get_settings()
    _engine = create_async_engine(url or settings.database_url, echo=settings.debug, pool_pre_ping=True)
    _session_factory = build_session_factory(_engine)
    await create_tables(_engine)


async def close_db() -> None:
    global _engine, _session_factory

    if _engine is not None:
        await _engine.dispose()
        _engine = None
        _session_factory = None


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    """Return the configured session factory.

    Raises RuntimeError if init_db() has not been called.
    """
    if _session_factory is None:
        raise RuntimeError("Database not initialized. Call init_db() first.")
    return _session_factory


async def database_reachable() -> bool:
    """SELECT 1 through the shared pool; False when uninitialized or unreachable."""
    if _session_factory is None:
        return False
    try:
        async with _session_factory() as session:
            await session.execute(text("SELECT 1"))
    except (SQLAlchemyError, OSError):
        return False
    return True
