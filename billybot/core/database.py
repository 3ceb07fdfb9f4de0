"""
Database connection and session management.

Uses SQLAlchemy with async support (asyncpg driver). Engines are built from
the injected Settings; nothing connects at import time.
"""

from fastapi import Request
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import declarative_base

from billybot.core.config import Settings

# Base class for all models
Base = declarative_base()


def create_engine_from_settings(settings: Settings) -> AsyncEngine:
    """Async engine for the app and Celery workers (asyncpg)."""
    return create_async_engine(
        settings.DATABASE_URL,
        echo=settings.DEBUG,
        pool_pre_ping=True,
        pool_size=10,
        max_overflow=20,
    )


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """
    Async session factory.

    Each email-account write opens its own short session from this factory,
    so concurrent per-account tasks never share a session.
    """
    return async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


def get_session_factory(request: Request) -> async_sessionmaker[AsyncSession]:
    """FastAPI dependency returning the factory created in the app lifespan."""
    return request.app.state.session_factory


async def init_db(engine: AsyncEngine):
    """
    Initialize database (create tables).

    For production, use Alembic migrations instead.
    This is useful for testing and local development.
    """
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def close_db(engine: AsyncEngine):
    """Close database connections gracefully."""
    await engine.dispose()
