"""
Database Configuration Module - Async Engine and Sessions
=========================================================
Architecture Decisions:
1. AsyncPG driver for PostgreSQL in production, aiosqlite for tests
2. Connection pool sized from settings
3. Session factory injected into the scan record store, never a hidden global
   at call sites
"""

import json
from contextlib import asynccontextmanager
from typing import AsyncGenerator

from sqlalchemy import text
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase

from harborscan.config import Settings, get_settings


# =============================================================================
# BASE MODEL - All ORM models inherit from this
# =============================================================================

class Base(DeclarativeBase):
    """Declarative base shared by all scan store tables."""
    pass


# =============================================================================
# ENGINE FACTORY
# =============================================================================

def create_db_engine(
    database_url: str | None = None,
    echo: bool | None = None,
    config: Settings | None = None,
) -> AsyncEngine:
    """
    Create an async engine for the scan record store.

    Args:
        database_url: Override the configured connection string (tests)
        echo: Override SQL echo setting
        config: Settings instance, defaults to the cached settings

    Pool arguments are only applied for server databases; SQLite uses
    SQLAlchemy's default pool for aiosqlite.
    """
    config = config or get_settings()
    url = database_url or config.database_url
    sql_echo = echo if echo is not None else config.db_echo_sql

    kwargs: dict = {
        "echo": sql_echo,
        "json_serializer": lambda obj: json.dumps(obj, default=str),
        "json_deserializer": json.loads,
    }

    if url.startswith("postgresql"):
        kwargs.update(
            pool_size=config.db_pool_size,
            max_overflow=config.db_max_overflow,
            pool_timeout=config.db_pool_timeout,
            pool_recycle=config.db_pool_recycle,
            pool_pre_ping=True,
        )
    if url.startswith("postgresql+asyncpg"):
        # Statement cache and fail-fast query timeout
        kwargs["connect_args"] = {
            "prepared_statement_cache_size": 500,
            "command_timeout": 30,
        }

    return create_async_engine(url, **kwargs)


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """
    Build a session factory bound to the given engine.

    - expire_on_commit=False: rows stay readable after commit in async code
    - autoflush=False: explicit flush control
    """
    return async_sessionmaker(
        bind=engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


# =============================================================================
# SESSION SCOPE
# =============================================================================

@asynccontextmanager
async def session_scope(
    session_factory: async_sessionmaker[AsyncSession],
) -> AsyncGenerator[AsyncSession, None]:
    """
    Transactional scope around a series of operations.

    Usage:
        async with session_scope(factory) as session:
            session.add(row)

    Commits on success, rolls back on any exception and re-raises.
    """
    session = session_factory()
    try:
        yield session
        await session.commit()
    except Exception:
        await session.rollback()
        raise
    finally:
        await session.close()


# =============================================================================
# DATABASE LIFECYCLE
# =============================================================================

async def init_db(engine: AsyncEngine) -> None:
    """
    Create tables if they don't exist.

    Warning: In production, use migrations instead.
    """
    # Import models so every table is registered on Base.metadata
    from harborscan import models  # noqa: F401

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def close_db(engine: AsyncEngine) -> None:
    """Dispose the engine and close pooled connections."""
    await engine.dispose()


async def health_check(engine: AsyncEngine) -> dict:
    """Database connectivity check for the health endpoint."""
    try:
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
        return {"status": "healthy", "database": "connected"}
    except Exception as e:
        return {
            "status": "unhealthy",
            "database": "disconnected",
            "error": str(e),
        }
