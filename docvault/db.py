"""SQLAlchemy 2.x async database setup.

This module defines the async engine and session factory but does not
hard-code any connection credentials.
"""

from __future__ import annotations

from typing import AsyncIterator

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from .config import DatabaseSettings, settings


def build_engine(config: DatabaseSettings) -> AsyncEngine:
    kwargs: dict = {"echo": config.echo, "future": True}
    if not config.url.startswith("sqlite"):
        kwargs.update(pool_size=config.pool_size, max_overflow=config.max_overflow)
    return create_async_engine(config.url, **kwargs)


engine: AsyncEngine = build_engine(settings.db)

AsyncSessionMaker = async_sessionmaker(bind=engine, expire_on_commit=False, class_=AsyncSession)


async def get_session() -> AsyncIterator[AsyncSession]:
    """FastAPI-friendly async session dependency.

    Usage:
        async def endpoint(session: AsyncSession = Depends(get_session)):
            ...
    """

    async with AsyncSessionMaker() as session:
        yield session
