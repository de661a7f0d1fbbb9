"""PostgreSQL engine, sessions and schema migrations.

The API and the delivery worker share one async engine per process. Loaded
objects stay readable after commit.
"""

import asyncio
from collections.abc import AsyncGenerator
from pathlib import Path

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import declarative_base

from alembic import command
from alembic.config import Config
from newsletter.config import settings

API_ROOT = Path(__file__).resolve().parents[1]

engine = create_async_engine(settings.database_url, pool_pre_ping=True)

AsyncSessionLocal = async_sessionmaker(
    bind=engine,
    class_=AsyncSession,
    expire_on_commit=False,
    autoflush=False,
)

Base = declarative_base()


def _alembic_config(db_url: str | None = None) -> Config:
    config = Config(str(API_ROOT / "alembic.ini"))
    config.set_main_option("script_location", str(API_ROOT / "alembic"))
    config.set_main_option("sqlalchemy.url", db_url or settings.database_url)
    return config


async def init_db(db_url: str | None = None) -> None:
    """Upgrade the schema to the latest Alembic revision.

    Alembic's env.py runs its own event loop, so the upgrade happens in a
    worker thread.
    """
    await asyncio.to_thread(command.upgrade, _alembic_config(db_url), "head")


async def check_connection() -> None:
    """Round-trip to the database; raises if it cannot be reached."""
    async with engine.connect() as conn:
        await conn.execute(text("SELECT 1"))


async def close_db() -> None:
    await engine.dispose()


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """Request-scoped session: committed if the endpoint succeeds, rolled back otherwise."""
    async with AsyncSessionLocal() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
