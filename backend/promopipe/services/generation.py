"""Shared contract and HTTP plumbing for asynchronous generation services.

Every generation service follows the same shape:
  submit()      start an external operation, returns its operation id
  get_status()  normalized (status, progress, result_url, error)

Raw provider statuses are normalized to "running", "completed" or "failed".
HTTP failures are translated at this boundary: 5xx, 429 and transport
errors become ExternalServiceError (retried here with tenacity, then by the
queue), other 4xx become ValidationError.
"""

import logging
from abc import ABC, abstractmethod
from typing import Any, Literal, Optional

import httpx
from pydantic import BaseModel
from tenacity import (
    AsyncRetrying,
    before_sleep_log,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
    wait_random,
)

from promopipe.errors import ExternalServiceError, ValidationError

logger = logging.getLogger(__name__)

# Status normalization sets
_COMPLETED_STATUSES = frozenset({"completed", "success", "succeeded", "done", "ok"})
_FAILED_STATUSES = frozenset({"failed", "error", "cancelled", "canceled"})


class OperationStatus(BaseModel):
    status: Literal["running", "completed", "failed"]
    progress: float = 0.0
    result_url: Optional[str] = None
    error: Optional[str] = None


def normalize_status(raw_status: Optional[str]) -> str:
    """Map a provider status string onto running/completed/failed.

    Unknown and queued-like statuses count as running.
    """
    value = (raw_status or "").strip().lower()
    if value in _COMPLETED_STATUSES:
        return "completed"
    if value in _FAILED_STATUSES:
        return "failed"
    return "running"


def normalize_progress(raw: Any) -> float:
    """Accept 0–1 fractions or 0–100 percentages; clamp to [0, 1]."""
    try:
        value = float(raw or 0)
    except (TypeError, ValueError):
        return 0.0
    if value > 1.0:
        value /= 100.0
    return min(max(value, 0.0), 1.0)


def _is_retriable(exc: BaseException) -> bool:
    """Return True only for transient errors worth retrying (429, 5xx, network)."""
    return isinstance(exc, ExternalServiceError)


def translate_http_error(exc: Exception, service: str) -> Exception:
    """Translate an httpx exception into the pipeline error taxonomy."""
    if isinstance(exc, httpx.HTTPStatusError):
        code = exc.response.status_code
        body = exc.response.text[:300]
        if code == 429 or code >= 500:
            return ExternalServiceError(f"{service} returned HTTP {code}: {body}", code)
        return ValidationError(f"{service} rejected request (HTTP {code}): {body}")
    if isinstance(exc, httpx.TransportError):
        return ExternalServiceError(f"{service} unreachable: {type(exc).__name__}: {exc}")
    return exc


class GenerationService(ABC):
    """Asynchronous external generation service (video or music)."""

    name: str = "generation"

    @abstractmethod
    async def submit(self, request: dict[str, Any]) -> str:
        """Start an external operation and return its id."""
        ...

    @abstractmethod
    async def get_status(self, operation_id: str) -> OperationStatus:
        ...

    async def close(self) -> None:
        pass


class HttpGenerationClient(GenerationService):
    """httpx-backed base client with a lazily created connection pool.

    Args:
        base_url: Service root URL.
        api_key: Credential sent in the authorization header.
        timeout: Per-request timeout in seconds.
        max_retries: Attempts per HTTP call for transient errors.
        retry_backoff: Exponential backoff multiplier in seconds (0 disables waiting).
        transport: Optional httpx transport, used by tests.
    """

    auth_scheme = "Bearer"

    def __init__(
        self,
        base_url: str,
        api_key: str,
        *,
        timeout: float = 60.0,
        max_retries: int = 3,
        retry_backoff: float = 2.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.timeout = timeout
        self.max_retries = max_retries
        self.retry_backoff = retry_backoff
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                headers={
                    "Authorization": f"{self.auth_scheme} {self.api_key}",
                    "Content-Type": "application/json",
                },
                follow_redirects=True,
                timeout=httpx.Timeout(self.timeout, connect=min(self.timeout, 30.0)),
                transport=self._transport,
            )
        return self._client

    async def _request(self, method: str, path: str, **kwargs) -> dict[str, Any]:
        """Send one request with retry on transient errors and return the JSON body."""
        retrying = AsyncRetrying(
            stop=stop_after_attempt(self.max_retries),
            wait=wait_exponential(multiplier=self.retry_backoff, max=60)
            + wait_random(0, self.retry_backoff),
            retry=retry_if_exception(_is_retriable),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=True,
        )
        async for attempt in retrying:
            with attempt:
                try:
                    response = await self.client.request(method, path, **kwargs)
                    response.raise_for_status()
                except (httpx.HTTPStatusError, httpx.TransportError) as e:
                    raise translate_http_error(e, self.name) from e
                try:
                    return response.json()
                except ValueError as e:
                    raise ExternalServiceError(f"{self.name} returned invalid JSON") from e

    async def close(self) -> None:
        """Close the underlying HTTP client."""
        if self._client and not self._client.is_closed:
            await self._client.aclose()
            self._client = None
