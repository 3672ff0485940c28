"""
config/database.py
Async SQLAlchemy engine, sessions, the declarative base and the UTC column type.
Postgres via asyncpg in production; SQLite via aiosqlite for local runs and tests.
"""

from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import AsyncIterator

from sqlalchemy import DateTime
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase
from sqlalchemy.pool import NullPool
from sqlalchemy.types import TypeDecorator

from config.settings import settings


def build_engine(url: str = settings.DATABASE_URL, pooled: bool = True) -> AsyncEngine:
    """Create an engine. SQLite and worker-task engines skip the pool."""
    if url.startswith("sqlite") or not pooled:
        return create_async_engine(url, poolclass=NullPool, echo=settings.DEBUG)
    return create_async_engine(
        url,
        pool_size=settings.DATABASE_POOL_SIZE,
        max_overflow=settings.DATABASE_MAX_OVERFLOW,
        pool_timeout=settings.DATABASE_POOL_TIMEOUT,
        pool_pre_ping=True,
        pool_recycle=3600,
        echo=settings.DEBUG,
    )


# ── Engine ────────────────────────────────────────────────────
engine = build_engine()

# ── Session Factory ───────────────────────────────────────────
AsyncSessionLocal = async_sessionmaker(engine, expire_on_commit=False, autoflush=False)


# ── Types ─────────────────────────────────────────────────────
class UTCDateTime(TypeDecorator):
    """
    Timezone-aware timestamp that always round-trips as a UTC datetime.
    Naive values are treated as UTC on the way in; SQLite hands back naive
    values on the way out, which get the UTC tzinfo reattached.
    """

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ── Base Model ────────────────────────────────────────────────
class Base(DeclarativeBase):
    pass


# ── Sessions ──────────────────────────────────────────────────
@asynccontextmanager
async def get_db_context(
    session_factory: async_sessionmaker = AsyncSessionLocal,
) -> AsyncIterator[AsyncSession]:
    """
    One unit of work: commit when the block exits cleanly, roll back when it
    raises. Celery tasks pass their own factory bound to a per-task engine.
    """
    async with session_factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


async def get_db() -> AsyncIterator[AsyncSession]:
    """FastAPI dependency: one session per request."""
    async with get_db_context() as session:
        yield session


async def init_db() -> None:
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def close_db() -> None:
    await engine.dispose()
