"""Persisted pipeline run records."""

import logging
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from promopipe.db.models import PipelineRunRecord
from promopipe.schemas.pipeline import PipelineRun

logger = logging.getLogger(__name__)


class RunRepository:
    """Stores the final snapshot of each run after the status cache entry expires."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    async def save(self, run: PipelineRun) -> None:
        async with self.session_factory() as session:
            await session.merge(PipelineRunRecord(**run.model_dump(mode="json")))
            await session.commit()
        logger.debug("Saved run record %s (%s)", run.run_id, run.stage.value)

    async def get(self, run_id: str) -> Optional[PipelineRun]:
        async with self.session_factory() as session:
            record = await session.get(PipelineRunRecord, run_id)
            if record is None:
                return None
            return _to_run(record)

    async def list_for_owner(self, owner_id: str, limit: int = 50) -> list[PipelineRun]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(PipelineRunRecord)
                .where(PipelineRunRecord.owner_id == owner_id)
                .order_by(PipelineRunRecord.created_at.desc())
                .limit(limit)
            )
            return [_to_run(record) for record in result.scalars().all()]


def _to_run(record: PipelineRunRecord) -> PipelineRun:
    return PipelineRun.model_validate(
        {
            column.key: getattr(record, column.key)
            for column in PipelineRunRecord.__mapper__.column_attrs
        }
    )
