"""Polling loop for long-running external operations.

The poller is an explicit state machine:

    pending -> polling <-> waiting -> completed | failed | timed_out | cancelled

Time only advances through the injected clock, so tests drive a full
60-poll timeout without real sleeps. A failed external operation is
reported, never retried here; retry policy belongs to the queue.
"""

import inspect
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Callable, Optional

from promopipe.clock import Clock, system_clock
from promopipe.errors import JobCancelled, OperationFailedError, PollTimeoutError
from promopipe.services.generation import OperationStatus

logger = logging.getLogger(__name__)


class PollState(str, Enum):
    PENDING = "pending"
    POLLING = "polling"
    WAITING = "waiting"
    COMPLETED = "completed"
    FAILED = "failed"
    TIMED_OUT = "timed_out"
    CANCELLED = "cancelled"


TERMINAL_POLL_STATES = frozenset({
    PollState.COMPLETED, PollState.FAILED, PollState.TIMED_OUT, PollState.CANCELLED,
})

POLL_TRANSITIONS = {
    PollState.PENDING: {PollState.POLLING, PollState.CANCELLED},
    PollState.POLLING: {
        PollState.WAITING, PollState.COMPLETED, PollState.FAILED, PollState.TIMED_OUT,
    },
    PollState.WAITING: {PollState.POLLING, PollState.CANCELLED},
}


@dataclass
class ExternalOperation:
    operation_id: str
    status: str = "running"
    progress: float = 0.0
    result_url: Optional[str] = None
    error: Optional[str] = None


@dataclass
class TerminalResult:
    state: PollState
    operation: ExternalOperation
    attempts: int

    @property
    def ok(self) -> bool:
        return self.state == PollState.COMPLETED

    def raise_for_state(self, label: str = "operation") -> str:
        """Return the result URL, or raise the error matching the terminal state."""
        op = self.operation
        if self.state == PollState.COMPLETED:
            return op.result_url
        if self.state == PollState.TIMED_OUT:
            raise PollTimeoutError(
                f"{label} {op.operation_id} timed out after {self.attempts} polls"
            )
        if self.state == PollState.CANCELLED:
            raise JobCancelled(f"{label} {op.operation_id} cancelled while polling")
        raise OperationFailedError(f"{label} {op.operation_id} failed: {op.error or 'unknown error'}")


ProgressCallback = Callable[[float], Optional[Awaitable[None]]]


class ExternalTaskPoller:
    """Waits for an external operation to reach a terminal status."""

    def __init__(
        self,
        fetch_status: Callable[[str], Awaitable[OperationStatus]],
        *,
        clock: Clock = system_clock,
        on_progress: Optional[ProgressCallback] = None,
        is_cancelled: Optional[Callable[[], bool]] = None,
    ):
        self._fetch_status = fetch_status
        self._clock = clock
        self._on_progress = on_progress
        self._is_cancelled = is_cancelled or (lambda: False)
        self.state = PollState.PENDING

    def _transition(self, target: PollState) -> None:
        if target not in POLL_TRANSITIONS.get(self.state, ()):
            raise RuntimeError(f"Illegal poll transition {self.state.value} -> {target.value}")
        self.state = target

    async def _report(self, fraction: float) -> None:
        if self._on_progress is None:
            return
        result = self._on_progress(fraction)
        if inspect.isawaitable(result):
            await result

    async def wait(self, operation_id: str, interval: float, max_attempts: int) -> TerminalResult:
        """Poll until terminal. The first poll happens immediately.

        Raises:
            ExternalServiceError: Propagated from ``fetch_status``; transient
                HTTP failures are already retried by the service client.
        """
        op = ExternalOperation(operation_id)
        attempts = 0
        while True:
            if self._is_cancelled():
                self._transition(PollState.CANCELLED)
                logger.info(f"Polling {operation_id} cancelled after {attempts} poll(s)")
                return TerminalResult(self.state, op, attempts)

            self._transition(PollState.POLLING)
            attempts += 1
            status = await self._fetch_status(operation_id)
            op.status = status.status
            op.progress = max(op.progress, status.progress)
            logger.debug(
                "Poll %d/%d for %s: %s (%.0f%%)",
                attempts, max_attempts, operation_id, status.status, status.progress * 100,
            )

            if status.status == "completed" and not status.result_url:
                op.error = "completed without a result URL"
                self._transition(PollState.FAILED)
                logger.warning(f"Operation {operation_id} completed without a result URL")
                return TerminalResult(self.state, op, attempts)

            if status.status == "completed":
                op.result_url = status.result_url
                op.progress = 1.0
                await self._report(1.0)
                self._transition(PollState.COMPLETED)
                return TerminalResult(self.state, op, attempts)

            if status.status == "failed":
                op.error = status.error
                self._transition(PollState.FAILED)
                logger.warning(f"Operation {operation_id} failed: {status.error}")
                return TerminalResult(self.state, op, attempts)

            await self._report(op.progress)

            if attempts >= max_attempts:
                self._transition(PollState.TIMED_OUT)
                logger.warning(f"Operation {operation_id} timed out after {attempts} polls")
                return TerminalResult(self.state, op, attempts)

            self._transition(PollState.WAITING)
            await self._clock.sleep(interval)
