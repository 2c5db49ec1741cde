"""Database configuration and setup."""

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, create_async_engine
from sqlalchemy.orm import declarative_base, sessionmaker

Base = declarative_base()


async def init_db(engine: AsyncEngine) -> None:
    """Create tables that do not exist yet."""
    # Register models on Base.metadata
    from . import models  # noqa: F401

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


def get_engine(database_url: str) -> AsyncEngine:
    """Create async engine."""
    options = {"echo": False}
    if not database_url.startswith("sqlite"):
        options["pool_pre_ping"] = True
    return create_async_engine(database_url, **options)


def get_session_factory(engine):
    """Create async session factory."""
    return sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )
