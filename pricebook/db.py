"""SQLAlchemy 2.x async database setup.

This module defines the async engine and session factory but does not
hard-code any connection credentials.
"""

from __future__ import annotations

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from .config import settings


def build_engine(url: str | None = None) -> AsyncEngine:
    """Create an async engine; pool sizing only applies to server databases."""
    url = url or settings.db.url
    kwargs: dict = {"echo": settings.db.echo, "future": True}
    if not url.startswith("sqlite"):
        kwargs.update(pool_size=settings.db.pool_size, max_overflow=settings.db.max_overflow)
    return create_async_engine(url, **kwargs)


engine: AsyncEngine = build_engine()

AsyncSessionMaker = async_sessionmaker(bind=engine, expire_on_commit=False, class_=AsyncSession)
