"""Queue registry: named queues, per-queue worker pools and lifecycle events.

Each queue gets a fixed pool of worker tasks whose size equals its
concurrency limit. A worker claims the next ready job only when, under one
lock, the queue is not paused, its active count is below the limit and its
rate limiter grants a dispatch slot. Otherwise the job stays ``waiting``.

Events emitted (callbacks may be sync or async):
    active(job), progress(job, fraction), completed(job, result),
    retrying(job, exc), failed(job, exc), stalled(job), cancelled(job)
"""

import asyncio
import inspect
import logging
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Mapping, Optional

from promopipe.clock import Clock, system_clock
from promopipe.config import QueueConfig, RetryConfig
from promopipe.errors import ConfigurationError, JobCancelled, StallError
from promopipe.orchestrator.failures import FailureManager
from promopipe.queue.limiter import RateLimiter
from promopipe.queue.models import (
    PENDING_STATES,
    BackoffPolicy,
    Job,
    JobError,
    JobRequest,
    JobState,
    TERMINAL_STATES,
)
from promopipe.queue.store import JobStore

logger = logging.getLogger(__name__)

EVENTS = frozenset({
    "active", "progress", "completed", "retrying", "failed", "stalled", "cancelled",
})

Handler = Callable[[Job, "JobContext"], Awaitable[Any]]


class JobContext:
    """Handle passed to a job handler for progress, liveness and cancellation."""

    def __init__(self, registry: "QueueRegistry", job: Job):
        self.job = job
        self._registry = registry
        self._cancel = asyncio.Event()

    @property
    def cancelled(self) -> bool:
        return self._cancel.is_set()

    def raise_if_cancelled(self) -> None:
        if self._cancel.is_set():
            raise JobCancelled(f"Job {self.job.id} cancelled")

    async def heartbeat(self) -> None:
        await self._registry._heartbeat(self.job.id)

    async def report_progress(self, fraction: float) -> None:
        """Record progress in [0, 1]; also counts as a heartbeat."""
        fraction = min(max(float(fraction), 0.0), 1.0)
        await self._registry._report_progress(self.job.id, fraction)

    async def keepalive(self, awaitable: Awaitable[Any], interval: float = 10.0) -> Any:
        """Await ``awaitable`` while sending a heartbeat every ``interval`` seconds."""
        task = asyncio.ensure_future(awaitable)
        try:
            while True:
                done, _ = await asyncio.wait({task}, timeout=interval)
                if done:
                    return task.result()
                await self.heartbeat()
        except asyncio.CancelledError:
            task.cancel()
            raise


@dataclass(eq=False)
class _Running:
    job_id: str
    context: JobContext
    task: Optional[asyncio.Task] = None
    abandoned: bool = False


@dataclass(eq=False)
class _QueueState:
    name: str
    config: QueueConfig
    limiter: Optional[RateLimiter]
    paused: bool = False
    handler: Optional[Handler] = None
    active: set = field(default_factory=set)
    workers: list = field(default_factory=list)
    wakeup: asyncio.Event = field(default_factory=asyncio.Event)


class QueueRegistry:
    """Owns the scheduling state of every queue; job data lives in the store."""

    def __init__(
        self,
        store: JobStore,
        queues: Mapping[str, QueueConfig],
        *,
        retry: Optional[RetryConfig] = None,
        failures: Optional[FailureManager] = None,
        clock: Clock = system_clock,
    ):
        retry = retry or RetryConfig()
        self.store = store
        self.failures = failures or FailureManager()
        self._clock = clock
        self._default_attempts = retry.max_attempts
        self._default_backoff = BackoffPolicy(
            base_delay=retry.base_delay, max_delay=retry.max_delay,
        )
        self._idle_interval = retry.idle_interval
        self._queues: dict[str, _QueueState] = {}
        for name, cfg in queues.items():
            limiter = None
            if cfg.limiter_max:
                limiter = RateLimiter(cfg.limiter_max, cfg.limiter_duration_ms / 1000.0, clock)
            self._queues[name] = _QueueState(name, cfg, limiter)

        self._lock = asyncio.Lock()
        self._listeners: dict[str, list[Callable]] = defaultdict(list)
        self._waiters: dict[str, list[asyncio.Future]] = defaultdict(list)
        self._running: dict[str, _Running] = {}
        self._started = False

    # ------------------------------------------------------------------
    # Queue lookup and events
    # ------------------------------------------------------------------

    @property
    def queue_names(self) -> list[str]:
        return list(self._queues)

    def _queue(self, name: str) -> _QueueState:
        q = self._queues.get(name)
        if q is None:
            raise ConfigurationError(f"Unknown queue: {name}")
        return q

    def config(self, queue_name: str) -> QueueConfig:
        return self._queue(queue_name).config

    def active_count(self, queue_name: str) -> int:
        return len(self._queue(queue_name).active)

    def on(self, event: str, callback: Callable) -> None:
        if event not in EVENTS:
            raise ValueError(f"Unknown event {event!r}; expected one of {sorted(EVENTS)}")
        self._listeners[event].append(callback)

    async def _emit(self, event: str, *args) -> None:
        for callback in list(self._listeners[event]):
            try:
                result = callback(*args)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.error(
                    f"Listener for '{event}' failed: {type(e).__name__}: {e}", exc_info=True,
                )

    def _resolve(self, job: Job) -> None:
        for fut in self._waiters.pop(job.id, []):
            if not fut.done():
                fut.set_result(job.model_copy(deep=True))

    # ------------------------------------------------------------------
    # Producer API
    # ------------------------------------------------------------------

    async def _add(self, q: _QueueState, request: JobRequest) -> Job:
        if request.job_id:
            existing = await self.store.get(request.job_id)
            if existing is not None:
                logger.debug("Job %s already known, returning existing", request.job_id)
                return existing

        now = self._clock.now()
        fields: dict[str, Any] = dict(
            queue=q.name,
            name=request.name,
            payload=request.payload,
            priority=request.priority,
            state=JobState.DELAYED if request.delay > 0 else JobState.WAITING,
            available_at=now + max(request.delay, 0.0),
            max_attempts=request.max_attempts or self._default_attempts,
            backoff=request.backoff or self._default_backoff,
            created_at=now,
        )
        if request.job_id:
            fields["id"] = request.job_id
        job = await self.store.add(Job(**fields))
        q.wakeup.set()
        return job

    async def enqueue(self, queue_name: str, request: JobRequest) -> Job:
        q = self._queue(queue_name)
        async with self._lock:
            job = await self._add(q, request)
        logger.debug("Enqueued %s on %s (priority=%d)", job.id, queue_name, job.priority)
        return job

    async def enqueue_bulk(self, queue_name: str, requests: list[JobRequest]) -> list[Job]:
        q = self._queue(queue_name)
        async with self._lock:
            jobs = [await self._add(q, request) for request in requests]
        logger.debug("Enqueued %d jobs on %s", len(jobs), queue_name)
        return jobs

    async def get_job(self, job_id: str) -> Optional[Job]:
        return await self.store.get(job_id)

    async def counts(self, queue_name: str) -> dict[str, int]:
        q = self._queue(queue_name)
        now = self._clock.now()
        counts = dict.fromkeys(
            ("waiting", "active", "completed", "failed", "delayed", "paused"), 0,
        )
        for job in await self.store.list(queue=queue_name):
            if job.state in PENDING_STATES:
                if job.available_at > now:
                    counts["delayed"] += 1
                elif q.paused:
                    counts["paused"] += 1
                else:
                    counts["waiting"] += 1
            elif job.state != JobState.CANCELLED:
                counts[job.state.value] += 1
        return counts

    async def pause(self, queue_name: str) -> None:
        self._queue(queue_name).paused = True
        logger.info(f"Queue {queue_name} paused")

    async def resume(self, queue_name: str) -> None:
        q = self._queue(queue_name)
        q.paused = False
        q.wakeup.set()
        logger.info(f"Queue {queue_name} resumed")

    async def purge(self, queue_name: str, older_than: float) -> int:
        """Delete terminal jobs that finished more than ``older_than`` seconds ago."""
        self._queue(queue_name)
        cutoff = self._clock.now() - older_than
        async with self._lock:
            stale = [
                job.id
                for job in await self.store.list(queue=queue_name, states=TERMINAL_STATES)
                if job.finished_at is not None and job.finished_at <= cutoff
            ]
            removed = await self.store.remove(stale)
        if removed:
            logger.info(f"Queue {queue_name}: purged {removed} job(s)")
        return removed

    async def purge_expired(self) -> int:
        """Purge terminal jobs past their queue's ``retention_seconds``."""
        removed = 0
        for name, q in self._queues.items():
            if q.config.retention_seconds is not None:
                removed += await self.purge(name, q.config.retention_seconds)
        return removed

    async def abandon_unfinished(self) -> list[Job]:
        """Cancel jobs a previous process left waiting, delayed or active.

        Nothing in this process waits on them, so they would run unobserved.
        Must be called before start().
        """
        if self._started:
            raise RuntimeError("abandon_unfinished() must be called before start()")
        async with self._lock:
            now = self._clock.now()
            jobs = await self.store.list(states=[*PENDING_STATES, JobState.ACTIVE])
            for job in jobs:
                job.state = JobState.CANCELLED
                job.finished_at = now
                job.error = JobError(type="JobCancelled", message="Abandoned by a previous process")
                await self.store.save(job)
        if jobs:
            logger.warning(f"Cancelled {len(jobs)} job(s) left unfinished by a previous process")
        return jobs

    async def wait_for(self, job_id: str) -> Job:
        """Wait until the job is completed, failed or cancelled and return it."""
        async with self._lock:
            job = await self.store.get(job_id)
            if job is None:
                raise KeyError(job_id)
            if job.is_terminal:
                return job
            fut = asyncio.get_running_loop().create_future()
            self._waiters[job_id].append(fut)
        return await fut

    async def cancel(self, job_id: str) -> bool:
        """Cancel a job.

        A pending job is cancelled immediately. An active job is signalled
        and stops at its next checkpoint. Returns False for unknown or
        terminal jobs.
        """
        async with self._lock:
            job = await self.store.get(job_id)
            if job is None or job.is_terminal:
                return False
            running = self._running.get(job_id)
            if job.state == JobState.ACTIVE and running is not None:
                running.context._cancel.set()
                logger.info(f"Job {job_id}: cancellation requested")
                return True
            job.state = JobState.CANCELLED
            job.finished_at = self._clock.now()
            job.error = JobError(type="JobCancelled", message="Cancelled before completion")
            await self.store.save(job)
            self._resolve(job)
        await self._emit("cancelled", job)
        return True

    # ------------------------------------------------------------------
    # Liveness and progress (called through JobContext)
    # ------------------------------------------------------------------

    async def _heartbeat(self, job_id: str) -> None:
        async with self._lock:
            job = await self.store.get(job_id)
            if job is None or job.state != JobState.ACTIVE:
                return
            job.last_heartbeat = self._clock.now()
            await self.store.save(job)

    async def _report_progress(self, job_id: str, fraction: float) -> None:
        async with self._lock:
            job = await self.store.get(job_id)
            if job is None or job.state != JobState.ACTIVE:
                return
            job.progress = fraction
            job.last_heartbeat = self._clock.now()
            await self.store.save(job)
        await self._emit("progress", job, fraction)

    async def check_stalled(self, window: float) -> list[str]:
        """Requeue or fail active jobs without a heartbeat for ``window`` seconds."""
        events: list[tuple] = []
        async with self._lock:
            now = self._clock.now()
            for job in await self.store.list(states=[JobState.ACTIVE]):
                last_seen = job.last_heartbeat or job.started_at or job.created_at
                if last_seen > now - window:
                    continue

                job.stall_count += 1
                decision = self.failures.decide_stall(job)
                if decision.retry:
                    logger.warning(
                        f"Job {job.id} stalled (no heartbeat for {now - last_seen:.1f}s), requeueing"
                    )
                    job.state = JobState.WAITING
                    job.available_at = now
                    job.started_at = None
                    await self.store.save(job)
                    events.append(("stalled", job))
                else:
                    exc = StallError(f"Job {job.id} stalled {job.stall_count} times")
                    logger.error(str(exc))
                    job.state = JobState.FAILED
                    job.error = JobError.from_exception(exc)
                    job.finished_at = now
                    await self.store.save(job)
                    self._resolve(job)
                    events.extend([("stalled", job), ("failed", job, exc)])

                running = self._running.get(job.id)
                if running is not None:
                    running.abandoned = True
                    if running.task is not None:
                        running.task.cancel()
                q = self._queues.get(job.queue)
                if q is not None:
                    q.wakeup.set()

        for event in events:
            await self._emit(*event)
        return [event[1].id for event in events if event[0] == "stalled"]

    # ------------------------------------------------------------------
    # Workers
    # ------------------------------------------------------------------

    def process(self, queue_name: str, handler: Handler) -> None:
        """Bind the handler that executes jobs of ``queue_name``."""
        q = self._queue(queue_name)
        q.handler = handler
        if self._started and not q.workers:
            self._spawn_workers(q)

    def _spawn_workers(self, q: _QueueState) -> None:
        for slot in range(q.config.concurrency):
            q.workers.append(
                asyncio.create_task(self._worker(q), name=f"{q.name}-worker-{slot}")
            )
        logger.info(f"Queue {q.name}: started {q.config.concurrency} worker(s)")

    async def start(self) -> None:
        if self._started:
            return
        self._started = True
        for q in self._queues.values():
            if q.handler is not None:
                self._spawn_workers(q)

    async def stop(self) -> None:
        self._started = False
        tasks = []
        for q in self._queues.values():
            tasks.extend(q.workers)
            q.workers = []
        for running in list(self._running.values()):
            if running.task is not None:
                tasks.append(running.task)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        logger.info("Queue registry stopped")

    async def _claim(self, q: _QueueState) -> Optional[Job]:
        async with self._lock:
            if q.paused or len(q.active) >= q.config.concurrency:
                q.wakeup.clear()
                return None
            now = self._clock.now()
            job = await self.store.next_ready(q.name, now)
            if job is None:
                q.wakeup.clear()
                return None
            if q.limiter is not None and not q.limiter.try_acquire():
                q.wakeup.clear()
                return None

            job.state = JobState.ACTIVE
            job.started_at = now
            job.last_heartbeat = now
            job.progress = 0.0
            await self.store.save(job)
            running = _Running(job.id, JobContext(self, job))
            q.active.add(running)
            self._running[job.id] = running
            return job

    async def _worker(self, q: _QueueState) -> None:
        # stop() clears _started before cancelling the workers
        while self._started:
            job = await self._claim(q)
            if job is None:
                try:
                    async with asyncio.timeout(self._idle_interval):
                        await q.wakeup.wait()
                except TimeoutError:
                    pass
                continue
            await self._run(q, job)

    async def _run(self, q: _QueueState, job: Job) -> None:
        running = self._running[job.id]
        running.task = asyncio.create_task(q.handler(job, running.context))
        await self._emit("active", job)

        result: Any = None
        error: Optional[BaseException] = None
        try:
            result = await running.task
        except asyncio.CancelledError:
            if not running.abandoned:
                running.task.cancel()
                raise
        except Exception as e:
            error = e
        finally:
            q.active.discard(running)
            if self._running.get(job.id) is running:
                del self._running[job.id]
            q.wakeup.set()

        if not running.abandoned:
            await self._finish(job.id, result, error)

    async def _finish(self, job_id: str, result: Any, error: Optional[BaseException]) -> None:
        async with self._lock:
            job = await self.store.get(job_id)
            if job is None or job.state != JobState.ACTIVE:
                return
            now = self._clock.now()

            if error is None:
                job.state = JobState.COMPLETED
                job.result = result
                job.progress = 1.0
                job.finished_at = now
                event: tuple = ("completed", job, result)
                logger.debug("Job %s completed", job.id)
            elif isinstance(error, JobCancelled):
                job.state = JobState.CANCELLED
                job.error = JobError.from_exception(error)
                job.finished_at = now
                event = ("cancelled", job)
                logger.info(f"Job {job.id} cancelled")
            else:
                job.attempts_made += 1
                job.error = JobError.from_exception(error)
                decision = self.failures.decide(job, error)
                if decision.retry:
                    job.state = JobState.DELAYED if decision.delay > 0 else JobState.WAITING
                    job.available_at = now + decision.delay
                    job.started_at = None
                    event = ("retrying", job, error)
                    logger.warning(
                        f"Job {job.id} attempt {job.attempts_made}/{job.max_attempts} failed "
                        f"({type(error).__name__}: {error}); retrying in {decision.delay:.2f}s"
                    )
                else:
                    job.state = JobState.FAILED
                    job.finished_at = now
                    event = ("failed", job, error)
                    logger.error(
                        f"Job {job.id} failed permanently: {type(error).__name__}: {error} "
                        f"({decision.reason})"
                    )

            await self.store.save(job)
            if job.is_terminal:
                self._resolve(job)

        await self._emit(*event)
