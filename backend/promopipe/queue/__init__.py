"""Job queue: named queues with concurrency limits, rate limiters and retries.

Usage:
    from promopipe.queue import InMemoryJobStore, JobRequest, QueueRegistry

    registry = QueueRegistry(InMemoryJobStore(), settings.queues)
    registry.process("video-generation", handler)
    await registry.start()
    job = await registry.enqueue("video-generation", JobRequest(name="clip", payload={...}))
    done = await registry.wait_for(job.id)
"""

from promopipe.queue.limiter import RateLimiter
from promopipe.queue.models import BackoffPolicy, Job, JobError, JobRequest, JobState
from promopipe.queue.registry import JobContext, QueueRegistry
from promopipe.queue.store import InMemoryJobStore, JobStore

__all__ = [
    "BackoffPolicy",
    "InMemoryJobStore",
    "Job",
    "JobContext",
    "JobError",
    "JobRequest",
    "JobState",
    "JobStore",
    "QueueRegistry",
    "RateLimiter",
]
