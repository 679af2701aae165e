"""
Async SQLAlchemy engine + session factory for the durable record store.

TiDB is wire-compatible with MySQL 5.7, so deployments use the aiomysql
driver. Tests point `database_url` at sqlite+aiosqlite instead. The engine is
created once per process and shared by the API and the sync workers.
"""
import logging

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase
from sqlalchemy.pool import StaticPool

logger = logging.getLogger(__name__)


class Base(DeclarativeBase):
    pass


def create_engine(url: str) -> AsyncEngine:
    if url.startswith("sqlite"):
        # Single shared connection so an in-memory database survives across sessions
        return create_async_engine(
            url,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
            echo=False,
        )
    return create_async_engine(
        url,
        pool_pre_ping=True,
        pool_size=20,
        max_overflow=10,
        echo=False,
    )


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(
        bind=engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )


async def init_db(engine: AsyncEngine) -> None:
    """Create all tables if they don't exist (idempotent)."""
    # Registers the mapped classes on Base.metadata
    from feedledger import models  # noqa: F401

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Database tables initialised")
