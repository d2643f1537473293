"""Vertex AI adapter for the LLM abstraction layer.

Wraps the google-genai client with structured JSON output. Transient
Vertex errors (5xx, 429, network) are retried with tenacity; anything still
failing is reported as ExternalServiceError so the queue can back off.
"""

import logging
from typing import Optional, Type

from google.genai import types as genai_types
from google.genai.errors import ClientError, ServerError
from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError
from tenacity import (
    before_sleep_log,
    retry,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from promopipe.errors import ExternalServiceError, ValidationError
from promopipe.services.llm.base import LLMAdapter
from promopipe.services.vertex_client import get_vertex_client

logger = logging.getLogger(__name__)


def _is_retriable(exc: BaseException) -> bool:
    """Return True only for transient errors worth retrying (429, 5xx)."""
    if isinstance(exc, ServerError):
        return True
    if isinstance(exc, ClientError):
        return getattr(exc, "code", 0) == 429
    if isinstance(exc, (ConnectionError, TimeoutError)):
        return True
    return False


class VertexAIAdapter(LLMAdapter):
    """LLM adapter backed by Google Vertex AI (google-genai SDK)."""

    def __init__(self, model_id: str) -> None:
        self._model_id = model_id

    async def generate_text(
        self,
        prompt: str,
        schema: Type[BaseModel],
        *,
        temperature: float = 0.7,
        system_prompt: Optional[str] = None,
        max_retries: int = 3,
    ) -> BaseModel:
        @retry(
            stop=stop_after_attempt(max_retries),
            wait=wait_exponential(multiplier=1, min=2, max=30),
            retry=retry_if_exception(_is_retriable),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=True,
        )
        async def _call() -> str:
            client = get_vertex_client()
            config = genai_types.GenerateContentConfig(
                temperature=temperature,
                response_mime_type="application/json",
                response_schema=schema,
                system_instruction=system_prompt,
            )
            response = await client.aio.models.generate_content(
                model=self._model_id,
                contents=prompt,
                config=config,
            )
            return response.text or ""

        try:
            text = await _call()
        except (ServerError, ConnectionError, TimeoutError) as e:
            raise ExternalServiceError(f"Vertex AI unavailable: {e}") from e
        except ClientError as e:
            if getattr(e, "code", 0) == 429:
                raise ExternalServiceError(f"Vertex AI rate limited: {e}", 429) from e
            raise ValidationError(f"Vertex AI rejected request: {e}") from e

        try:
            return schema.model_validate_json(text)
        except PydanticValidationError as e:
            raise ExternalServiceError(
                f"{self._model_id} returned output not matching {schema.__name__}: {e.error_count()} error(s)"
            ) from e
