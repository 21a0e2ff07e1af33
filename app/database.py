"""
Async SQLAlchemy engine and request-scoped sessions.

One session per request or Celery task: committed when the unit of work
returns, rolled back when it raises. Services flush but never commit.
"""

import logging
from contextlib import asynccontextmanager
from typing import AsyncGenerator, Optional

from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase

from app.config import settings

logger = logging.getLogger(__name__)

ASYNC_DRIVERS = {
    "postgres": "postgresql+asyncpg",
    "postgresql": "postgresql+asyncpg",
    "sqlite": "sqlite+aiosqlite",
}


def get_database_url() -> str:
    """DATABASE_URL with an async driver; asyncpg rejects ``sslmode``."""
    if not settings.database_url:
        return ""
    url = make_url(settings.database_url)
    driver = ASYNC_DRIVERS.get(url.drivername)
    if driver:
        url = url.set(drivername=driver)
    if "sslmode" in url.query:
        url = url.difference_update_query(["sslmode"])
    return url.render_as_string(hide_password=False)


def create_engine_if_configured() -> Optional[AsyncEngine]:
    db_url = get_database_url()
    if not db_url:
        logger.warning("DATABASE_URL not configured. Funnels, conversations and webhooks are disabled.")
        return None

    options = {"echo": settings.debug, "pool_pre_ping": True}
    if not db_url.startswith("sqlite"):
        options.update(pool_size=settings.db_pool_size, max_overflow=settings.db_max_overflow)
    return create_async_engine(db_url, **options)


# May be None if not configured
engine = create_engine_if_configured()

async_session_maker = (
    async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    if engine
    else None
)


class Base(DeclarativeBase):
    pass


@asynccontextmanager
async def _unit_of_work() -> AsyncGenerator[AsyncSession, None]:
    if not async_session_maker:
        raise RuntimeError("Database not configured. Set DATABASE_URL environment variable.")

    async with async_session_maker() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """FastAPI dependency. Routers that must persist a failure commit themselves first."""
    async with _unit_of_work() as session:
        yield session


@asynccontextmanager
async def get_db_context() -> AsyncGenerator[AsyncSession, None]:
    """Same unit of work for Celery tasks and scripts."""
    async with _unit_of_work() as session:
        yield session


async def init_db() -> None:
    """Create tables directly; development only, production runs alembic."""
    if not engine:
        logger.info("Skipping database initialization - DATABASE_URL not configured")
        return

    # Register all tables on Base.metadata
    import app.models  # noqa: F401

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info(f"Created {len(Base.metadata.tables)} tables")


async def close_db() -> None:
    if engine:
        await engine.dispose()
