"""Job store interface and its in-memory implementation.

The registry never keeps job state of its own; it reads and writes through
a ``JobStore`` handed to it, so tests use ``InMemoryJobStore`` and the
service uses the SQLAlchemy-backed store from ``promopipe.db``.
"""

import itertools
from abc import ABC, abstractmethod
from typing import Iterable, Optional

from promopipe.queue.models import PENDING_STATES, Job, JobState


class JobStore(ABC):
    """Persistence for jobs across all queues."""

    @abstractmethod
    async def add(self, job: Job) -> Job:
        """Insert a new job, assigning its FIFO sequence number."""
        ...

    @abstractmethod
    async def get(self, job_id: str) -> Optional[Job]:
        ...

    @abstractmethod
    async def save(self, job: Job) -> None:
        """Persist every field of an existing job."""
        ...

    @abstractmethod
    async def next_ready(self, queue: str, now: float) -> Optional[Job]:
        """Return the dispatchable job with the highest priority, oldest first.

        Jobs whose available_at lies in the future are invisible.
        """
        ...

    @abstractmethod
    async def list(
        self, queue: Optional[str] = None, states: Optional[Iterable[JobState]] = None
    ) -> list[Job]:
        ...

    @abstractmethod
    async def remove(self, job_ids: Iterable[str]) -> int:
        ...


class InMemoryJobStore(JobStore):
    """Dict-backed store. Returns copies so callers never share mutable state."""

    def __init__(self) -> None:
        self._jobs: dict[str, Job] = {}
        self._seq = itertools.count(1)

    async def add(self, job: Job) -> Job:
        job.seq = next(self._seq)
        self._jobs[job.id] = job.model_copy(deep=True)
        return job

    async def get(self, job_id: str) -> Optional[Job]:
        job = self._jobs.get(job_id)
        return job.model_copy(deep=True) if job else None

    async def save(self, job: Job) -> None:
        self._jobs[job.id] = job.model_copy(deep=True)

    async def next_ready(self, queue: str, now: float) -> Optional[Job]:
        ready = [
            job for job in self._jobs.values()
            if job.queue == queue
            and job.state in PENDING_STATES
            and job.available_at <= now
        ]
        if not ready:
            return None
        return min(ready, key=Job.dispatch_key).model_copy(deep=True)

    async def list(
        self, queue: Optional[str] = None, states: Optional[Iterable[JobState]] = None
    ) -> list[Job]:
        wanted = set(states) if states is not None else None
        return [
            job.model_copy(deep=True)
            for job in sorted(self._jobs.values(), key=lambda j: j.seq)
            if (queue is None or job.queue == queue)
            and (wanted is None or job.state in wanted)
        ]

    async def remove(self, job_ids: Iterable[str]) -> int:
        removed = 0
        for job_id in job_ids:
            if self._jobs.pop(job_id, None) is not None:
                removed += 1
        return removed
