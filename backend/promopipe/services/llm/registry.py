"""Provider registry for LLM adapters.

Routes model IDs to the adapter implementation. Only Vertex AI (gemini-
models) is wired in; unknown prefixes are rejected.
"""

import logging

from promopipe.errors import ConfigurationError
from promopipe.services.llm.base import LLMAdapter

logger = logging.getLogger(__name__)


def _is_gemini_model(model_id: str) -> bool:
    """Return True if the model ID uses the gemini- prefix."""
    return model_id.startswith("gemini-")


def get_adapter(model_id: str) -> LLMAdapter:
    """Return the LLM adapter for the given model ID.

    Args:
        model_id: Model identifier string (e.g., "gemini-2.5-flash").

    Raises:
        ConfigurationError: If no adapter handles the model ID.
    """
    if _is_gemini_model(model_id):
        from promopipe.services.llm.vertex_adapter import VertexAIAdapter

        logger.debug("Routing %s to VertexAIAdapter", model_id)
        return VertexAIAdapter(model_id=model_id)

    raise ConfigurationError(f"No LLM adapter for model {model_id!r}")
