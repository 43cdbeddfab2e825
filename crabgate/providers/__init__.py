"""LLM provider abstraction module."""

from crabgate.providers.base import LLMProvider, LLMResponse, ToolCallRequest
from crabgate.providers.litellm_provider import LiteLLMProvider

__all__ = ["LLMProvider", "LLMResponse", "ToolCallRequest", "LiteLLMProvider"]
