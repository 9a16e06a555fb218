"""
Database engine and sessions.

The API process shares one pooled engine. Celery tasks each run on their own
event loop, and asyncpg connections cannot cross loops, so a task gets a
throwaway engine without a pool that is disposed when the task ends.

All DateTime columns hold naive UTC; use utcnow() rather than datetime.now().
"""
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import AsyncIterator

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import declarative_base
from sqlalchemy.pool import NullPool

from app.core.config import settings

engine = create_async_engine(settings.DATABASE_URL, echo=settings.DEBUG, pool_pre_ping=True)

AsyncSessionLocal = async_sessionmaker(bind=engine, class_=AsyncSession, expire_on_commit=False)

Base = declarative_base()


def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


@asynccontextmanager
async def get_session() -> AsyncIterator[AsyncSession]:
    """Session on the shared engine; the caller commits"""
    async with AsyncSessionLocal() as session:
        yield session


async def get_db() -> AsyncIterator[AsyncSession]:
    """FastAPI dependency"""
    async with get_session() as session:
        yield session


async def create_tables() -> None:
    """create_all for every model (idempotent; no migration history is kept)"""
    import app.db.models  # noqa: F401  registers the tables on Base.metadata

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


@asynccontextmanager
async def get_task_session() -> AsyncIterator[AsyncSession]:
    """Session for one Celery task, on an engine that lives only as long as the task"""
    task_engine = create_async_engine(settings.DATABASE_URL, echo=settings.DEBUG, poolclass=NullPool)
    try:
        async with async_sessionmaker(bind=task_engine, expire_on_commit=False)() as session:
            yield session
    finally:
        await task_engine.dispose()
