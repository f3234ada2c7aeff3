"""
Models module for LLM client abstraction.

Provides a unified interface for structured generation with Gemini.
"""

from voice_order_agent.models.llm_client import (
    DEFAULT_GEMINI_MODEL,
    LLMClient,
    LLMClientBase,
    LLMError,
    LLMResponse,
    parse_json_loose,
)

__all__ = [
    "LLMClient",
    "LLMClientBase",
    "LLMError",
    "LLMResponse",
    "DEFAULT_GEMINI_MODEL",
    "parse_json_loose",
]
