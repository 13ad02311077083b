"""
Database Connection and Session Management
"""
from contextlib import asynccontextmanager
from typing import Any

from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import declarative_base

from app.core.config import settings


def _engine_kwargs(database_url: str, pooled: bool = False) -> dict[str, Any]:
    """SQLite (local runs) takes no pool sizing; server databases get pre-ping and limits."""
    if make_url(database_url).get_backend_name() == "sqlite":
        return {"echo": settings.DEBUG}

    kwargs: dict[str, Any] = {"echo": settings.DEBUG, "pool_pre_ping": True}
    if pooled:
        kwargs.update(pool_size=5, max_overflow=10)
    return kwargs


def create_engine(database_url: str | None = None, pooled: bool = False) -> AsyncEngine:
    url = database_url or settings.DATABASE_URL
    return create_async_engine(url, **_engine_kwargs(url, pooled))


engine = create_engine()

AsyncSessionLocal = async_sessionmaker(
    bind=engine,
    class_=AsyncSession,
    expire_on_commit=False
)

Base = declarative_base()


async def create_tables(bind: AsyncEngine | None = None) -> None:
    """Create session, customer, product and order tables if missing"""
    # Register every model on Base.metadata
    import app.db.models  # noqa: F401

    async with (bind or engine).begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def get_db() -> AsyncSession:
    """Dependency for getting database session"""
    async with AsyncSessionLocal() as session:
        try:
            yield session
        finally:
            await session.close()


@asynccontextmanager
async def get_task_session():
    """
    Fresh engine and session for a Celery task.

    Each task runs on its own event loop, and pooled connections may not
    cross loops, so the engine lives only as long as the task.
    """
    task_engine = create_engine(pooled=True)
    task_session_maker = async_sessionmaker(
        bind=task_engine,
        class_=AsyncSession,
        expire_on_commit=False
    )

    try:
        async with task_session_maker() as session:
            yield session
    finally:
        await task_engine.dispose()
