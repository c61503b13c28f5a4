"""Async engine and session factory.

Usage:
    from .database import get_engine, get_session_factory

    engine = get_engine(database_url)
    async_session = get_session_factory(engine)

    async with async_session() as session:
        ...
"""

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import StaticPool

from .models import Base


def get_engine(database_url: str) -> AsyncEngine:
    """Create an async SQLAlchemy engine from DATABASE_URL.

    Accepts postgres://, postgresql:// and postgresql+asyncpg:// URLs, and
    sqlite+aiosqlite:// URLs for local runs and tests.
    """
    url = database_url
    if url.startswith("sqlite"):
        options: dict = {"echo": False}
        if ":memory:" in url:
            # One shared connection, otherwise every session sees an empty database
            options.update(poolclass=StaticPool, connect_args={"check_same_thread": False})
        return create_async_engine(url, **options)

    # Normalise Railway/Heroku postgres:// → postgresql+asyncpg://
    if url.startswith("postgres://"):
        url = url.replace("postgres://", "postgresql+asyncpg://", 1)
    elif url.startswith("postgresql://") and "+asyncpg" not in url:
        url = url.replace("postgresql://", "postgresql+asyncpg://", 1)

    return create_async_engine(
        url,
        pool_size=5,
        max_overflow=10,
        pool_pre_ping=True,
        echo=False,
    )


def get_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Return a session factory bound to the given engine."""
    return async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)


async def create_schema(engine: AsyncEngine) -> None:
    """Create all tables directly (tests and local SQLite; production uses Alembic)."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
