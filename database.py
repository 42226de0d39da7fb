"""
Database Configuration and Session Management
============================================

This module provides the async database engine, session factory, and table creation
functionality for the settlement service.
"""

import logging
from contextlib import asynccontextmanager
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from config import Config
from models import Base
from utils.exceptions import SettlementError

logger = logging.getLogger(__name__)

if not Config.DATABASE_URL:
    raise ValueError("DATABASE_URL environment variable is required")


def _async_database_url(url: str) -> str:
    """Route plain PostgreSQL URLs through the asyncpg driver"""
    if url.startswith('postgres://'):
        url = url.replace('postgres://', 'postgresql://', 1)
    if url.startswith('postgresql://'):
        url = url.replace('postgresql://', 'postgresql+asyncpg://', 1)
    return url


def _engine_options(url: str) -> dict:
    options = {"echo": Config.DATABASE_ECHO}
    if url.startswith('postgresql+asyncpg://'):
        # Pool sizing only applies to server databases
        options.update(
            pool_size=7,
            max_overflow=15,
            pool_pre_ping=True,
            pool_recycle=3600,
            pool_timeout=30,
            connect_args={
                "server_settings": {"application_name": "trade_settlement"},
            },
        )
    return options


async_database_url = _async_database_url(Config.DATABASE_URL)

async_engine = create_async_engine(async_database_url, **_engine_options(async_database_url))

AsyncSessionLocal = async_sessionmaker(
    async_engine,
    class_=AsyncSession,
    expire_on_commit=False,
)


async def create_tables(engine=None):
    """Create all database tables"""
    engine = engine or async_engine
    try:
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        logger.info("✅ Database tables created successfully")
    except Exception as e:
        logger.error(f"❌ Error creating database tables: {e}")
        raise


@asynccontextmanager
async def async_managed_session(session_factory=None):
    """Async context manager for database sessions"""
    session = (session_factory or AsyncSessionLocal)()
    try:
        yield session
        await session.commit()
    except SettlementError:
        await session.rollback()
        raise
    except Exception as e:
        logger.error(f"Database session error: {e}")
        await session.rollback()
        raise
    finally:
        await session.close()
