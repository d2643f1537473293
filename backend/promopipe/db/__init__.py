"""
Database module for promopipe.

Provides async SQLAlchemy engine with SQLite WAL mode,
session management, the SQL job store and the run repository.
"""
import logging
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncEngine

from promopipe.db.engine import async_session, engine, get_session, shutdown
from promopipe.db.job_store import SqlJobStore
from promopipe.db.models import Base, JobRecord, PipelineRunRecord
from promopipe.db.repository import RunRepository

logger = logging.getLogger(__name__)


async def init_database(bind: Optional[AsyncEngine] = None):
    """Initialize database schema on first run."""
    async with (bind or engine).begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Database schema ready")


__all__ = [
    "Base",
    "JobRecord",
    "PipelineRunRecord",
    "RunRepository",
    "SqlJobStore",
    "engine",
    "async_session",
    "get_session",
    "shutdown",
    "init_database",
]
