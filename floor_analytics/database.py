"""
Floor Analytics - Database Layer

This module handles database connections and raw SQL execution for the
floor analytics engine. It uses SQLAlchemy with async support (asyncpg)
against the plant telemetry schema; all queries go through ``text()``.
"""

from typing import Any, Dict, List, Optional

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, create_async_engine, async_sessionmaker
from tenacity import retry, stop_after_attempt, wait_exponential
import structlog

from floor_analytics.config import settings

logger = structlog.get_logger()


# Database engine
async_engine: Optional[AsyncEngine] = None
async_session_factory: Optional[async_sessionmaker] = None


async def init_db() -> None:
    """Initialize the async engine and verify connectivity."""
    global async_engine, async_session_factory

    try:
        async_engine = create_async_engine(
            settings.DATABASE_URL,
            pool_size=settings.DATABASE_POOL_SIZE,
            max_overflow=settings.DATABASE_MAX_OVERFLOW,
            pool_pre_ping=True,
            echo=settings.DATABASE_ECHO,
        )

        async_session_factory = async_sessionmaker(
            async_engine,
            class_=AsyncSession,
            expire_on_commit=False
        )

        await test_database_connection()

        logger.info("Database initialized successfully")

    except Exception as e:
        logger.error("Failed to initialize database", error=str(e))
        raise


async def close_db() -> None:
    """Close database connections."""
    global async_engine, async_session_factory

    try:
        if async_engine:
            await async_engine.dispose()
            logger.info("Async database engine disposed")

        async_engine = None
        async_session_factory = None

    except Exception as e:
        logger.error("Error closing database connections", error=str(e))


@retry(
    stop=stop_after_attempt(settings.DATABASE_CONNECT_ATTEMPTS),
    wait=wait_exponential(multiplier=1, min=1, max=10),
    reraise=True,
)
async def test_database_connection() -> None:
    """Test database connectivity, retrying while the server comes up."""
    try:
        async with async_engine.begin() as conn:
            result = await conn.execute(text("SELECT 1"))
            result.fetchone()
        logger.info("Database connection test successful")
    except Exception as e:
        logger.warning("Database connection test failed", error=str(e))
        raise


# Database utility functions
async def execute_query(query: str, params: Optional[dict] = None) -> List[Dict[str, Any]]:
    """Execute a raw SQL query and return rows as dictionaries."""
    try:
        async with get_db_session() as session:
            result = await session.execute(text(query), params or {})
            return [dict(row) for row in result.mappings().all()]
    except Exception as e:
        logger.error("Database query execution failed",
                     query=query[:100], error=str(e))
        raise


async def execute_scalar(query: str, params: Optional[dict] = None):
    """Execute a raw SQL query and return a single scalar result."""
    try:
        async with get_db_session() as session:
            result = await session.execute(text(query), params or {})
            return result.scalar()
    except Exception as e:
        logger.error("Database scalar execution failed",
                     query=query[:100], error=str(e))
        raise


async def execute_update(query: str, params: Optional[dict] = None) -> int:
    """Execute an update/insert/delete query and return affected rows."""
    try:
        async with get_db_session() as session:
            result = await session.execute(text(query), params or {})
            return result.rowcount
    except Exception as e:
        logger.error("Database update execution failed",
                     query=query[:100], error=str(e))
        raise


async def check_database_health() -> dict:
    """Check database health and return status information."""
    try:
        await test_database_connection.retry_with(stop=stop_after_attempt(1))()
        return {
            "status": "healthy",
            "pool_size": settings.DATABASE_POOL_SIZE,
            "max_overflow": settings.DATABASE_MAX_OVERFLOW
        }
    except Exception as e:
        logger.error("Database health check failed", error=str(e))
        return {
            "status": "unhealthy",
            "error": str(e)
        }


# Transaction management
class DatabaseTransaction:
    """Context manager for multi-statement database transactions."""

    def __init__(self):
        self.session: Optional[AsyncSession] = None

    async def __aenter__(self) -> AsyncSession:
        if not async_session_factory:
            raise RuntimeError("Database not initialized. Call init_db() first.")

        self.session = async_session_factory()
        return self.session

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        if self.session:
            if exc_type:
                await self.session.rollback()
            else:
                await self.session.commit()
            await self.session.close()
