"""SQLAlchemy-backed ``JobStore`` so queued work survives a restart."""

from typing import Iterable, Optional

from sqlalchemy import delete, func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from promopipe.db.models import JobRecord
from promopipe.queue.models import PENDING_STATES, Job, JobState
from promopipe.queue.store import JobStore


def _to_record(job: Job) -> JobRecord:
    data = job.model_dump(mode="json")
    return JobRecord(**data)


def _to_job(record: JobRecord) -> Job:
    return Job.model_validate(
        {column.key: getattr(record, column.key) for column in JobRecord.__mapper__.column_attrs}
    )


class SqlJobStore(JobStore):
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    async def add(self, job: Job) -> Job:
        async with self.session_factory() as session:
            max_seq = (await session.execute(select(func.max(JobRecord.seq)))).scalar()
            job.seq = (max_seq or 0) + 1
            session.add(_to_record(job))
            await session.commit()
        return job

    async def get(self, job_id: str) -> Optional[Job]:
        async with self.session_factory() as session:
            record = await session.get(JobRecord, job_id)
            return _to_job(record) if record else None

    async def save(self, job: Job) -> None:
        async with self.session_factory() as session:
            await session.merge(_to_record(job))
            await session.commit()

    async def next_ready(self, queue: str, now: float) -> Optional[Job]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(JobRecord)
                .where(JobRecord.queue == queue)
                .where(JobRecord.state.in_([s.value for s in PENDING_STATES]))
                .where(JobRecord.available_at <= now)
                .order_by(JobRecord.priority.desc(), JobRecord.seq)
                .limit(1)
            )
            record = result.scalar_one_or_none()
            return _to_job(record) if record else None

    async def list(
        self, queue: Optional[str] = None, states: Optional[Iterable[JobState]] = None
    ) -> list[Job]:
        stmt = select(JobRecord).order_by(JobRecord.seq)
        if queue is not None:
            stmt = stmt.where(JobRecord.queue == queue)
        if states is not None:
            stmt = stmt.where(JobRecord.state.in_([JobState(s).value for s in states]))
        async with self.session_factory() as session:
            result = await session.execute(stmt)
            return [_to_job(record) for record in result.scalars().all()]

    async def remove(self, job_ids: Iterable[str]) -> int:
        ids = list(job_ids)
        if not ids:
            return 0
        async with self.session_factory() as session:
            result = await session.execute(delete(JobRecord).where(JobRecord.id.in_(ids)))
            await session.commit()
            return result.rowcount or 0
