# billkit/core/database.py
from typing import Optional

import redis.asyncio as redis
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import declarative_base

from .config import settings

Base = declarative_base()


def create_engine(database_url: Optional[str] = None, echo: Optional[bool] = None) -> AsyncEngine:
    url = database_url or settings.DATABASE_URL
    # Accept plain postgres URLs from the environment
    if url.startswith("postgresql://"):
        url = url.replace("postgresql://", "postgresql+asyncpg://", 1)
    return create_async_engine(url, echo=settings.DEBUG if echo is None else echo)


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker:
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


async def create_tables(engine: AsyncEngine) -> None:
    # Import for side effects: registers the tables on Base.metadata
    from ..models import customer, payment, subscription, time_travel  # noqa: F401

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


def get_redis(url: Optional[str] = None):
    """Redis client for cross-process customer locks, or None when not configured"""
    url = url or settings.REDIS_URL
    if not url:
        return None
    return redis.from_url(url, decode_responses=True)
