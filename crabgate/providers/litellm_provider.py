"""LiteLLM provider implementation for multi-provider support."""

import os
from typing import Any

import json_repair
import litellm
from litellm import acompletion
from loguru import logger

from crabgate.providers.base import LLMProvider, LLMResponse, ToolCallRequest

# Standard OpenAI chat-completion message keys; extras (e.g. reasoning_content) are stripped for strict providers.
_ALLOWED_MSG_KEYS = frozenset({"role", "content", "tool_calls", "tool_call_id", "name"})

# Env var litellm reads for each provider, keyed by provider name
_ENV_KEYS = {
    "anthropic": "ANTHROPIC_API_KEY",
    "openai": "OPENAI_API_KEY",
    "openrouter": "OPENROUTER_API_KEY",
    "gemini": "GEMINI_API_KEY",
    "zhipu": "ZHIPUAI_API_KEY",
    "groq": "GROQ_API_KEY",
}


class LiteLLMProvider(LLMProvider):
    """
    LLM provider using LiteLLM for multi-provider support.

    Supports OpenRouter, Anthropic, OpenAI, Gemini and many other providers
    through a unified interface.
    """

    def __init__(
        self,
        api_key: str | None = None,
        api_base: str | None = None,
        default_model: str = "anthropic/claude-opus-4-5",
        extra_headers: dict[str, str] | None = None,
        provider_name: str | None = None,
    ):
        super().__init__(api_key, api_base)
        self.default_model = default_model
        self.extra_headers = extra_headers or {}
        self.provider_name = provider_name

        if api_key and provider_name in _ENV_KEYS:
            os.environ.setdefault(_ENV_KEYS[provider_name], api_key)

        # Disable LiteLLM logging noise
        litellm.suppress_debug_info = True
        # Drop unsupported parameters for providers (e.g., gpt-5 rejects some params)
        litellm.drop_params = True

    def _resolve_model(self, model: str) -> str:
        """Apply the gateway prefix for OpenRouter-style routing."""
        if self.provider_name == "openrouter" and not model.startswith("openrouter/"):
            return f"openrouter/{model}"
        if self.provider_name == "vllm" and not model.startswith("hosted_vllm/"):
            return f"hosted_vllm/{model}"
        return model

    @staticmethod
    def _sanitize_messages(messages: list[dict[str, Any]]) -> list[dict[str, Any]]:
        """Strip non-standard keys and ensure assistant messages have a content key."""
        sanitized = []
        for msg in messages:
            clean = {k: v for k, v in msg.items() if k in _ALLOWED_MSG_KEYS}
            # Strict providers require "content" even when assistant only has tool_calls
            if clean.get("role") == "assistant" and "content" not in clean:
                clean["content"] = None
            sanitized.append(clean)
        return sanitized

    async def chat(
        self,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]] | None = None,
        model: str | None = None,
        max_tokens: int = 4096,
        temperature: float = 0.7,
    ) -> LLMResponse:
        """
        Send a chat completion request via LiteLLM.

        Backend failures come back as an LLMResponse with finish_reason
        "error" rather than an exception; the agent loop decides whether
        that is fatal.
        """
        model = self._resolve_model(model or self.default_model)

        kwargs: dict[str, Any] = {
            "model": model,
            "messages": self._sanitize_messages(messages),
            # LiteLLM rejects max_tokens < 1
            "max_tokens": max(1, max_tokens),
            "temperature": temperature,
        }

        if self.api_key:
            kwargs["api_key"] = self.api_key
        if self.api_base:
            kwargs["api_base"] = self.api_base
        if self.extra_headers:
            kwargs["extra_headers"] = self.extra_headers

        if tools:
            kwargs["tools"] = tools
            kwargs["tool_choice"] = "auto"

        try:
            response = await acompletion(**kwargs)
        except Exception as e:
            logger.error("LiteLLM call failed for {}: {}", model, e)
            return LLMResponse(
                content=f"Error calling LLM: {str(e)}",
                finish_reason="error",
            )
        return self._parse_response(response)

    def _parse_response(self, response: Any) -> LLMResponse:
        """Parse LiteLLM response into our standard format."""
        choice = response.choices[0]
        message = choice.message

        tool_calls = []
        for i, tc in enumerate(getattr(message, "tool_calls", None) or []):
            args = tc.function.arguments
            if isinstance(args, str):
                # Models occasionally emit truncated or single-quoted JSON
                args = json_repair.loads(args) if args.strip() else {}
            if not isinstance(args, dict):
                args = {}
            tool_calls.append(ToolCallRequest(
                id=getattr(tc, "id", None) or f"call_{i}",
                name=tc.function.name,
                arguments=args,
            ))

        usage = {}
        if getattr(response, "usage", None):
            usage = {
                "prompt_tokens": response.usage.prompt_tokens,
                "completion_tokens": response.usage.completion_tokens,
                "total_tokens": response.usage.total_tokens,
            }

        return LLMResponse(
            content=message.content,
            tool_calls=tool_calls,
            finish_reason=choice.finish_reason or "stop",
            usage=usage,
            reasoning_content=getattr(message, "reasoning_content", None) or None,
        )

    def get_default_model(self) -> str:
        """Get the default model."""
        return self.default_model
