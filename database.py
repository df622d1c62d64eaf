"""
Database Configuration and Session Management
============================================

This module provides the async database engine, session factory, and table
creation for the Aid Claims service. Services receive a session factory so
tests (or a second database) can be wired in without touching module state.
"""

import logging
from contextlib import asynccontextmanager
from typing import Optional

from sqlalchemy import text
from sqlalchemy.ext.asyncio import (
    AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine,
)

from config import Config
from models import Base

logger = logging.getLogger(__name__)

_async_engine: Optional[AsyncEngine] = None
_session_factory: Optional[async_sessionmaker] = None


def build_engine(database_url: str, echo: bool = False) -> AsyncEngine:
    """Create an async engine with pool settings suited to the driver"""
    if database_url.startswith("sqlite"):
        # Each session gets its own connection; SQLite serialises writers with a busy timeout
        return create_async_engine(
            database_url,
            echo=echo,
            connect_args={"timeout": 30},
        )

    return create_async_engine(
        database_url,
        pool_size=7,
        max_overflow=15,
        pool_pre_ping=True,    # Validate connections before use
        pool_recycle=3600,     # Recycle connections every hour
        pool_timeout=30,
        echo=echo,
    )


def build_session_factory(engine: AsyncEngine) -> async_sessionmaker:
    return async_sessionmaker(
        engine,
        class_=AsyncSession,
        autoflush=False,
        expire_on_commit=False,  # Records are returned to callers after commit
    )


def configure_database(database_url: Optional[str] = None, echo: Optional[bool] = None) -> async_sessionmaker:
    """(Re)configure the module-level engine and session factory"""
    global _async_engine, _session_factory

    url = database_url or Config.DATABASE_URL
    _async_engine = build_engine(url, echo=Config.DATABASE_ECHO if echo is None else echo)
    _session_factory = build_session_factory(_async_engine)
    logger.info(f"🗄️ Database configured: {url.split('://')[0]}")
    return _session_factory


def get_engine() -> AsyncEngine:
    if _async_engine is None:
        configure_database()
    return _async_engine


def get_session_factory() -> async_sessionmaker:
    if _session_factory is None:
        configure_database()
    return _session_factory


@asynccontextmanager
async def async_managed_session(session_factory: Optional[async_sessionmaker] = None):
    """
    Async context manager for database sessions.

    Commits on success, rolls back and re-raises on any error.

    Usage:
        async with async_managed_session(factory) as session:
            session.add(record)
    """
    session = (session_factory or get_session_factory())()
    try:
        yield session
        await session.commit()
    except Exception as e:
        logger.error(f"Database session error: {e}")
        await session.rollback()
        raise
    finally:
        await session.close()


async def create_tables(engine: Optional[AsyncEngine] = None) -> bool:
    """Create all database tables if they don't exist"""
    target = engine or get_engine()
    try:
        logger.info("🏗️ Creating database tables (if they don't exist)...")
        async with target.begin() as connection:
            await connection.run_sync(Base.metadata.create_all, checkfirst=True)
        logger.info(f"✅ Database schema verified: {len(Base.metadata.tables)} tables")
        return True
    except Exception as e:
        logger.error(f"❌ Failed to create database tables: {e}", exc_info=True)
        return False


async def check_connection(engine: Optional[AsyncEngine] = None) -> bool:
    """Test database connection"""
    try:
        async with (engine or get_engine()).connect() as connection:
            await connection.execute(text("SELECT 1"))
        logger.info("✅ Database connection test successful")
        return True
    except Exception as e:
        logger.error(f"❌ Database connection test failed: {e}")
        return False


async def dispose_engine() -> None:
    """Dispose the module-level engine (shutdown)"""
    global _async_engine, _session_factory
    if _async_engine is not None:
        await _async_engine.dispose()
        logger.info("🔌 Database engine disposed")
    _async_engine = None
    _session_factory = None
