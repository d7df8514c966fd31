"""Database engine and session factories.

Engines are built explicitly from settings and handed to the stores that
use them; nothing is created at import time.
"""

from typing import Optional

from sqlalchemy.ext.asyncio import AsyncEngine, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from marketbill.db.base import Base
from marketbill.settings import Settings, get_settings


def get_async_engine(settings: Optional[Settings] = None, url: Optional[str] = None) -> AsyncEngine:
    """Create an async engine for the configured database."""
    settings = settings or get_settings()
    url = url or settings.database_url
    if url.startswith("sqlite"):
        # In-memory SQLite must share one connection across sessions
        return create_async_engine(
            url,
            echo=settings.database_echo,
            poolclass=StaticPool,
            connect_args={"check_same_thread": False},
        )
    return create_async_engine(
        url,
        echo=settings.database_echo,
        pool_size=settings.database_pool_size,
        max_overflow=10,
        pool_pre_ping=True,
    )


def get_async_session_factory(engine: AsyncEngine) -> async_sessionmaker:
    return async_sessionmaker(bind=engine, expire_on_commit=False)


async def create_all(engine: AsyncEngine) -> None:
    """Create every billing table. Development and tests only; production uses alembic."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
