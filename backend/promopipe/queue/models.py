"""Pydantic models for schedulable jobs."""

import uuid
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field


class JobState(str, Enum):
    WAITING = "waiting"
    DELAYED = "delayed"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


# Jobs in these states are candidates for dispatch once available_at has passed
PENDING_STATES = frozenset({JobState.WAITING, JobState.DELAYED})
TERMINAL_STATES = frozenset({JobState.COMPLETED, JobState.FAILED, JobState.CANCELLED})


class BackoffPolicy(BaseModel):
    """Exponential backoff: delay = base_delay * 2 ** attempts_made, capped."""

    base_delay: float = 2.0
    max_delay: float = 60.0

    def delay_for(self, attempts_made: int) -> float:
        return min(self.base_delay * (2 ** attempts_made), self.max_delay)


class JobError(BaseModel):
    type: str
    message: str

    @classmethod
    def from_exception(cls, exc: BaseException) -> "JobError":
        return cls(type=type(exc).__name__, message=str(exc))


class JobRequest(BaseModel):
    """What a caller hands to ``QueueRegistry.enqueue``.

    job_id makes re-submission idempotent: enqueueing an id that the
    store already knows returns the existing job untouched.
    """

    name: str
    payload: dict[str, Any] = Field(default_factory=dict)
    job_id: Optional[str] = None
    priority: int = 0
    delay: float = 0.0
    max_attempts: Optional[int] = None
    backoff: Optional[BackoffPolicy] = None


class Job(BaseModel):
    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    queue: str
    name: str
    payload: dict[str, Any] = Field(default_factory=dict)
    priority: int = 0
    seq: int = 0
    state: JobState = JobState.WAITING
    available_at: float = 0.0
    attempts_made: int = 0
    max_attempts: int = 3
    backoff: BackoffPolicy = Field(default_factory=BackoffPolicy)
    # Error types that already consumed their single retry
    single_retries: list[str] = Field(default_factory=list)
    stall_count: int = 0
    progress: float = 0.0
    last_heartbeat: Optional[float] = None
    result: Any = None
    error: Optional[JobError] = None
    created_at: float = 0.0
    started_at: Optional[float] = None
    finished_at: Optional[float] = None

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    def dispatch_key(self) -> tuple[int, int]:
        """Sort key: higher priority first, then enqueue order."""
        return (-self.priority, self.seq)
