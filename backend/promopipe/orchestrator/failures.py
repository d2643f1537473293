"""Failure and retry policy, stall detection, and terminal artifact cleanup.

Retry policy by error type:
- ExternalServiceError: exponential backoff up to the job's max attempts
- PollTimeoutError, StorageError: one retry, then permanent
- StallError: one requeue, then permanent
- ValidationError, OperationFailedError, JobCancelled, ConfigurationError:
  never retried
- anything else: never retried
"""

from __future__ import annotations

import asyncio
import logging
import shutil
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Optional

from promopipe.errors import NON_RETRYABLE, RETRY_ONCE, ExternalServiceError

if TYPE_CHECKING:
    from promopipe.queue.models import Job
    from promopipe.queue.registry import QueueRegistry

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RetryDecision:
    retry: bool
    delay: float = 0.0
    reason: str = ""


class FailureManager:
    """Decides what happens to a job after its handler raised.

    ``attempts_made`` on the job already counts the attempt that just failed.
    """

    def decide(self, job: Job, exc: BaseException) -> RetryDecision:
        error_type = type(exc).__name__

        if isinstance(exc, NON_RETRYABLE):
            return RetryDecision(False, reason=f"{error_type} is not retryable")

        if job.attempts_made >= job.max_attempts:
            return RetryDecision(
                False, reason=f"attempts exhausted ({job.attempts_made}/{job.max_attempts})"
            )

        if isinstance(exc, RETRY_ONCE):
            if error_type in job.single_retries:
                return RetryDecision(False, reason=f"{error_type} already retried once")
            job.single_retries.append(error_type)
            return RetryDecision(True, job.backoff.delay_for(job.attempts_made), "retry once")

        if isinstance(exc, ExternalServiceError):
            return RetryDecision(True, job.backoff.delay_for(job.attempts_made), "transient")

        return RetryDecision(False, reason=f"unexpected {error_type}")

    def decide_stall(self, job: Job) -> RetryDecision:
        """``stall_count`` already includes the stall being handled."""
        if job.stall_count <= 1:
            return RetryDecision(True, 0.0, "first stall")
        return RetryDecision(False, reason=f"stalled {job.stall_count} times")


class ArtifactLedger:
    """Records temporary files per run and deletes each of them exactly once."""

    def __init__(self) -> None:
        self._paths: dict[str, list[Path]] = {}
        self._deleted: dict[str, set[Path]] = {}

    def record(self, run_id: str, path: str | Path) -> Path:
        path = Path(path)
        paths = self._paths.setdefault(run_id, [])
        if path not in paths:
            paths.append(path)
        return path

    def paths(self, run_id: str) -> list[Path]:
        return list(self._paths.get(run_id, []))

    def deleted(self, run_id: str) -> set[Path]:
        return set(self._deleted.get(run_id, set()))

    def cleanup(self, run_id: str, run_dir: Optional[Path] = None) -> list[Path]:
        """Delete every recorded path of the run not already deleted.

        Paths that vanished on their own are fine. Returns the paths handled
        by this call; a second call for the same run returns an empty list.
        """
        done = self._deleted.setdefault(run_id, set())
        handled = []
        for path in self._paths.get(run_id, []):
            if path in done:
                continue
            try:
                path.unlink(missing_ok=True)
            except IsADirectoryError:
                shutil.rmtree(path, ignore_errors=True)
            done.add(path)
            handled.append(path)

        if run_dir is not None and run_dir.exists():
            shutil.rmtree(run_dir, ignore_errors=True)

        if handled:
            logger.info(f"Run {run_id}: cleaned up {len(handled)} temporary artifact(s)")
        return handled

    def forget(self, run_id: str) -> None:
        """Drop the bookkeeping of a run whose artifacts have been cleaned up."""
        self._paths.pop(run_id, None)
        self._deleted.pop(run_id, None)


class StallMonitor:
    """Periodically asks the registry to requeue or fail silent active jobs.

    Each sweep also purges finished jobs past their queue's retention.
    """

    def __init__(self, registry: QueueRegistry, window: float, interval: float):
        self.registry = registry
        self.window = window
        self.interval = interval
        self._task: Optional[asyncio.Task] = None

    async def check(self) -> list[str]:
        return await self.registry.check_stalled(self.window)

    async def _loop(self) -> None:
        while True:
            await asyncio.sleep(self.interval)
            try:
                await self.check()
                await self.registry.purge_expired()
            except Exception as e:
                logger.error(f"Queue maintenance failed: {type(e).__name__}: {e}", exc_info=True)

    def start(self) -> None:
        if self._task is None:
            self._task = asyncio.create_task(self._loop())
            logger.info(f"Stall monitor started (window={self.window}s, every {self.interval}s)")

    async def stop(self) -> None:
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
            logger.info("Stall monitor stopped")
