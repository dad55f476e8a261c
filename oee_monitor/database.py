"""
OEE Monitor - Database Layer

This module handles the primary store's engine lifecycle and schema. The
primary store keeps every collection in a single ``documents`` table: indexed
columns for the fields queries filter on, plus the full JSON document.
"""

from typing import Any, Dict, Optional

from sqlalchemy import JSON, Column, DateTime, Index, MetaData, String, Table, text
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine
import structlog

from oee_monitor.config import settings

logger = structlog.get_logger()


metadata = MetaData()

documents_table = Table(
    "documents",
    metadata,
    Column("collection", String(64), primary_key=True),
    Column("id", String(64), primary_key=True),
    Column("machine_id", String(64), nullable=True),
    Column("ts", DateTime, nullable=True),  # naive UTC value of the collection's time field
    Column("created_at", DateTime, nullable=False),
    Column("data", JSON().with_variant(JSONB(), "postgresql"), nullable=False),
    Index("ix_documents_collection_machine_ts", "collection", "machine_id", "ts"),
    Index("ix_documents_collection_created_at", "collection", "created_at"),
)


def create_primary_engine(database_url: Optional[str] = None, **overrides: Any) -> AsyncEngine:
    """Create the async engine backing the primary store."""
    url = database_url or settings.DATABASE_URL
    options: Dict[str, Any] = {"echo": settings.DATABASE_ECHO, "pool_pre_ping": True}

    if not url.startswith("sqlite"):
        options.update(
            pool_size=settings.DATABASE_POOL_SIZE,
            max_overflow=settings.DATABASE_MAX_OVERFLOW
        )

    options.update(overrides)
    return create_async_engine(url, **options)


async def init_db(engine: AsyncEngine) -> None:
    """Create the documents table and check connectivity."""
    try:
        async with engine.begin() as conn:
            await conn.run_sync(metadata.create_all)
        await test_database_connection(engine)
        logger.info("Database initialized successfully")
    except Exception as e:
        logger.error("Failed to initialize database", error=str(e))
        raise


async def close_db(engine: Optional[AsyncEngine]) -> None:
    """Close database connections."""
    if engine is None:
        return
    try:
        await engine.dispose()
        logger.info("Async database engine disposed")
    except Exception as e:
        logger.error("Error closing database connections", error=str(e))


async def test_database_connection(engine: AsyncEngine) -> None:
    """Test database connectivity."""
    try:
        async with engine.connect() as conn:
            result = await conn.execute(text("SELECT 1"))
            result.fetchone()
        logger.info("Database connection test successful")
    except Exception as e:
        logger.error("Database connection test failed", error=str(e))
        raise


async def check_database_health(engine: Optional[AsyncEngine]) -> Dict[str, Any]:
    """Check database health and return status information."""
    if engine is None:
        return {"status": "unavailable", "error": "engine not configured"}
    try:
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
        return {
            "status": "healthy",
            "dialect": engine.dialect.name,
            "pool": type(engine.pool).__name__
        }
    except Exception as e:
        logger.error("Database health check failed", error=str(e))
        return {"status": "unhealthy", "error": str(e)}
