"""
Trade Scoring Engine - Database.

Async engine and session factory construction. Nothing is
created at import time; callers own the engine lifecycle.
"""

import logging
import os
from typing import Optional

from dotenv import load_dotenv
from sqlalchemy.ext.asyncio import AsyncEngine, async_sessionmaker, create_async_engine

from .config import DatabaseConfig
from .models import Base
from .types import ConfigurationError


logger = logging.getLogger(__name__)


def get_database_url(url: Optional[str] = None) -> Optional[str]:
    """
    Resolve the async database URL.

    Falls back to DATABASE_URL. Plain postgresql:// URLs are
    rewritten to the asyncpg driver.
    """
    if url is None:
        load_dotenv()
        url = os.getenv("DATABASE_URL")
    if not url:
        return None
    if url.startswith("postgresql://"):
        url = url.replace("postgresql://", "postgresql+asyncpg://", 1)
    elif url.startswith("postgres://"):
        url = url.replace("postgres://", "postgresql+asyncpg://", 1)
    return url


def create_engine_from_config(config: DatabaseConfig) -> AsyncEngine:
    """
    Create an async engine.

    Raises:
        ConfigurationError: If no database URL is configured
    """
    database_url = get_database_url(config.url)
    if not database_url:
        raise ConfigurationError("No database URL configured")

    logger.info(f"Creating database engine for: {database_url.split('@')[-1]}")

    kwargs = {"echo": config.echo, "pool_pre_ping": True}
    if not database_url.startswith("sqlite"):
        kwargs["pool_size"] = config.pool_size
        kwargs["max_overflow"] = config.max_overflow
    return create_async_engine(database_url, **kwargs)


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker:
    return async_sessionmaker(engine, expire_on_commit=False)


async def create_schema(engine: AsyncEngine) -> None:
    """Create trade scoring tables if missing."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Trade scoring tables ensured")
