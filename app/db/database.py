"""
Database engine and sessions.

The API shares one engine; each Celery task run builds its own engine on the
task's event loop and disposes of it afterwards.
"""
from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import declarative_base

from app.core.config import settings

Base = declarative_base()


def _engine_options(pool_size: int, max_overflow: int) -> dict[str, Any]:
    options: dict[str, Any] = {"echo": settings.DEBUG, "pool_pre_ping": True}
    # SQLite (local runs, tests) has no server-side pool to size
    if not settings.DATABASE_URL.startswith("sqlite"):
        options.update(pool_size=pool_size, max_overflow=max_overflow)
    return options


def build_engine(pool_size: int, max_overflow: int) -> AsyncEngine:
    return create_async_engine(settings.DATABASE_URL, **_engine_options(pool_size, max_overflow))


def session_factory(bind: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    # Booking results are read after commit, so loaded rows must stay usable
    return async_sessionmaker(bind=bind, class_=AsyncSession, expire_on_commit=False)


engine = build_engine(settings.DATABASE_POOL_SIZE, settings.DATABASE_MAX_OVERFLOW)
AsyncSessionLocal = session_factory(engine)


async def init_models() -> None:
    """Create missing tables; imports the models so they are registered"""
    import app.db.models  # noqa: F401

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """FastAPI dependency: one session per request, rolled back if the handler raised"""
    async with AsyncSessionLocal() as session:
        try:
            yield session
        except Exception:
            await session.rollback()
            raise


@asynccontextmanager
async def get_task_session() -> AsyncGenerator[AsyncSession, None]:
    """
    Session for one Celery task run.

    asyncpg connections are bound to the loop that opened them, and every
    task run gets a fresh loop, so the module-level engine cannot be reused.
    """
    task_engine = build_engine(settings.TASK_DATABASE_POOL_SIZE, settings.TASK_DATABASE_POOL_SIZE * 2)
    try:
        async with session_factory(task_engine)() as session:
            yield session
    finally:
        await task_engine.dispose()
