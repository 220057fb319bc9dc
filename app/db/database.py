"""
Database Connection and Session Management
"""
from contextlib import asynccontextmanager
from datetime import datetime, timezone

from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.orm import declarative_base

from app.core.config import settings

engine = create_async_engine(
    settings.DATABASE_URL,
    echo=settings.DEBUG,
    pool_pre_ping=True
)

AsyncSessionLocal = async_sessionmaker(
    bind=engine,
    class_=AsyncSession,
    expire_on_commit=False
)

Base = declarative_base()


async def get_db() -> AsyncSession:
    """Dependency for getting database session"""
    async with AsyncSessionLocal() as session:
        try:
            yield session
        finally:
            await session.close()


def get_session_factory() -> async_sessionmaker:
    """Dependency for long-lived handlers (sockets) that open a short session per operation"""
    return AsyncSessionLocal


@asynccontextmanager
async def get_task_session():
    """
    Fresh engine + session for Celery tasks.

    Each task runs on its own event loop; reusing the module-level engine
    would attach its pooled connections to a different loop.
    """
    task_engine = create_async_engine(
        settings.DATABASE_URL,
        echo=settings.DEBUG,
        pool_pre_ping=True,
        pool_size=2,
        max_overflow=2
    )
    task_session_maker = async_sessionmaker(
        bind=task_engine,
        class_=AsyncSession,
        expire_on_commit=False
    )

    async with task_session_maker() as session:
        try:
            yield session
        finally:
            await session.close()

    await task_engine.dispose()


def utcnow() -> datetime:
    """Naive UTC timestamp; every DateTime column stores UTC without tzinfo"""
    return datetime.now(timezone.utc).replace(tzinfo=None)
