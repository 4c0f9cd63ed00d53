"""SQLAlchemy 2.x async database setup.

The API process shares one pooled engine. Spawned workers never reuse it:
they build their own engine through :func:`create_worker_engine` so that no
connection crosses a process boundary.
"""

from __future__ import annotations

from typing import AsyncIterator

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

from .config import settings


engine: AsyncEngine = create_async_engine(
    settings.db.url,
    echo=settings.db.echo,
    future=True,
    pool_size=settings.db.pool_size,
    max_overflow=settings.db.max_overflow,
    pool_pre_ping=True,
)

AsyncSessionMaker = async_sessionmaker(bind=engine, expire_on_commit=False, class_=AsyncSession)


async def get_session() -> AsyncIterator[AsyncSession]:
    """FastAPI-friendly async session dependency.

    Usage:
        async def endpoint(session: AsyncSession = Depends(get_session)):
            ...
    """

    async with AsyncSessionMaker() as session:
        yield session


def create_worker_engine() -> AsyncEngine:
    """Dedicated engine for a worker process (no pooling across the process lifetime)."""
    return create_async_engine(settings.db.url, echo=settings.db.echo, future=True, poolclass=NullPool)


def session_factory_for(bind: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(bind=bind, expire_on_commit=False, class_=AsyncSession)


async def ping(bind: AsyncEngine) -> None:
    """Round-trip a trivial query; raises if the database is unreachable."""
    async with bind.connect() as conn:
        await conn.execute(text("SELECT 1"))
