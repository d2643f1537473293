"""LLM provider abstraction layer used for scene descriptions.

Usage:
    from promopipe.services.llm import get_adapter, LLMAdapter

    adapter = get_adapter("gemini-2.5-flash")
    result = await adapter.generate_text(prompt, SceneDescriptionSet)
"""

from promopipe.services.llm.base import LLMAdapter
from promopipe.services.llm.registry import get_adapter

__all__ = ["LLMAdapter", "get_adapter"]
