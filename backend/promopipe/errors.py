"""Exception hierarchy shared by the queue, the stage workers and the orchestrator.

Workers raise these; the failure manager decides retry vs. terminal by type.
Only terminal failures reach a run's visible status, wrapped in
``PermanentFailure`` with the originating type and message preserved.
"""

from typing import Optional


class PipelineError(Exception):
    """Base class for all pipeline errors."""


class ConfigurationError(PipelineError):
    """Unknown queue, missing handler or invalid service configuration."""


class ValidationError(PipelineError):
    """Bad input shape or disallowed parameter values. Never retried."""


class ExternalServiceError(PipelineError):
    """Transient failure talking to an external service (network, 5xx, 429)."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class OperationFailedError(PipelineError):
    """An external operation reached its own ``failed`` status."""


class PollTimeoutError(PipelineError):
    """An external operation did not finish within the poll budget."""


class StallError(PipelineError):
    """A worker stopped reporting liveness while holding a job."""


class StorageError(PipelineError):
    """Compiling, downloading or uploading an artifact failed."""


class JobCancelled(PipelineError):
    """The job was cancelled cooperatively at a checkpoint."""


class PermanentFailure(PipelineError):
    """Terminal failure of a run.

    Attributes:
        error_type: Class name of the originating error.
        stage: Pipeline stage the failure happened in.
    """

    def __init__(self, error_type: str, message: str, stage: Optional[str] = None):
        super().__init__(message)
        self.error_type = error_type
        self.message = message
        self.stage = stage

    @classmethod
    def wrap(cls, exc: BaseException, stage: Optional[str] = None) -> "PermanentFailure":
        if isinstance(exc, PermanentFailure):
            if stage and not exc.stage:
                exc.stage = stage
            return exc
        return cls(type(exc).__name__, str(exc), stage)

    def __str__(self) -> str:
        return f"{self.error_type}: {self.message}"


# Errors that must fail a job on the first occurrence
NON_RETRYABLE = (ValidationError, ConfigurationError, OperationFailedError, JobCancelled)

# Errors retried exactly once before becoming permanent
RETRY_ONCE = (PollTimeoutError, StorageError)
