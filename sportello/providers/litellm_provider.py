"""LiteLLM provider implementation for multi-provider support.

Model ids are OpenRouter style (``moonshotai/kimi-k2.5``); the configured
gateway prefix is applied before the call so LiteLLM routes them correctly.
"""

import asyncio
import json
import os
import re
from typing import Any

import json_repair
import litellm
from litellm import acompletion

from sportello.providers.base import LLMProvider, LLMResponse, ToolCallRequest
from sportello.providers.errors import ErrorKind, classify_exception

# Standard OpenAI chat-completion message keys; extras (e.g. reasoning_content) are stripped for strict providers.
_ALLOWED_MSG_KEYS = frozenset({"role", "content", "tool_calls", "tool_call_id", "name"})

# Some gateways wrap tool names ("tool.read_file", "functions.read_file")
_TOOL_PREFIX_PATTERN = re.compile(r"^(?:tool|functions)\.")

_GATEWAY_ENV_KEYS = {
    "openrouter": "OPENROUTER_API_KEY",
    "anthropic": "ANTHROPIC_API_KEY",
    "openai": "OPENAI_API_KEY",
}


class LiteLLMProvider(LLMProvider):
    """
    LLM provider using LiteLLM.

    Failures never raise: they come back as an LLMResponse with
    finish_reason="error", the HTTP status (when known) and an ErrorKind,
    so the runner can decide between retrying, downgrading and giving up.
    """

    def __init__(
        self,
        api_key: str | None = None,
        api_base: str | None = None,
        default_model: str = "moonshotai/kimi-k2.5",
        gateway: str | None = "openrouter",
        extra_headers: dict[str, str] | None = None,
        extra_body: dict[str, Any] | None = None,
    ):
        super().__init__(api_key, api_base)
        self.default_model = default_model
        self.gateway = gateway
        self.extra_headers = extra_headers or {}
        self.extra_body = extra_body or {}

        if api_key and gateway in _GATEWAY_ENV_KEYS:
            os.environ.setdefault(_GATEWAY_ENV_KEYS[gateway], api_key)

        # Disable LiteLLM logging noise
        litellm.suppress_debug_info = True
        # Drop unsupported parameters for providers
        litellm.drop_params = True

    def _resolve_model(self, model: str) -> str:
        """Apply the gateway prefix unless the model already carries it."""
        if self.gateway and not model.startswith(f"{self.gateway}/"):
            return f"{self.gateway}/{model}"
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
        timeout: float | None = None,
        response_format: dict[str, Any] | None = None,
    ) -> LLMResponse:
        """
        Send a chat completion request via LiteLLM.

        Args:
            messages: List of message dicts with 'role' and 'content'.
            tools: Optional list of tool definitions in OpenAI format.
            model: Model identifier (e.g., 'moonshotai/kimi-k2.5').
            max_tokens: Maximum tokens in response.
            temperature: Sampling temperature.
            timeout: Request timeout in seconds.
            response_format: Optional structured output request.

        Returns:
            LLMResponse with content and/or tool calls.
        """
        requested = model or self.default_model
        resolved = self._resolve_model(requested)

        kwargs: dict[str, Any] = {
            "model": resolved,
            "messages": self._sanitize_messages(self._sanitize_empty_content(messages)),
            # Clamp max_tokens to at least 1, LiteLLM rejects zero or negative values
            "max_tokens": max(1, max_tokens),
            "temperature": temperature,
        }

        if self.api_key:
            kwargs["api_key"] = self.api_key
        if self.api_base:
            kwargs["api_base"] = self.api_base
        if self.extra_headers:
            kwargs["extra_headers"] = self.extra_headers
        if self.extra_body:
            kwargs["extra_body"] = self.extra_body
        if timeout:
            kwargs["timeout"] = timeout
        if response_format:
            kwargs["response_format"] = response_format

        if tools:
            kwargs["tools"] = tools
            kwargs["tool_choice"] = "auto"

        try:
            response = await acompletion(**kwargs)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            # Return error as content for graceful handling
            status = getattr(e, "status_code", None)
            return LLMResponse(
                content=f"Error calling LLM: {str(e)}",
                finish_reason="error",
                status_code=status if isinstance(status, int) else None,
                error_kind=classify_exception(e),
                model=requested,
            )

        try:
            parsed = self._parse_response(response)
        except (AttributeError, IndexError, KeyError, TypeError, ValueError) as e:
            return LLMResponse(
                content=f"Error calling LLM: malformed response ({e})",
                finish_reason="error",
                error_kind=ErrorKind.MALFORMED,
                model=requested,
            )
        parsed.model = requested
        return parsed

    def _parse_response(self, response: Any) -> LLMResponse:
        """Parse LiteLLM response into our standard format."""
        if not response.choices:
            raise ValueError("response has no choices")
        choice = response.choices[0]
        message = choice.message

        tool_calls = []
        if getattr(message, "tool_calls", None):
            for tc in message.tool_calls:
                # Parse arguments from JSON string if needed
                args = tc.function.arguments
                if isinstance(args, str):
                    args = json_repair.loads(args) if args.strip() else {}
                if not isinstance(args, dict):
                    args = {"_raw": json.dumps(args)}

                tool_calls.append(ToolCallRequest(
                    id=tc.id or f"call_{len(tool_calls)}",
                    name=_TOOL_PREFIX_PATTERN.sub("", tc.function.name or ""),
                    arguments=args,
                ))

        usage = {}
        if getattr(response, "usage", None):
            usage = {
                "prompt_tokens": response.usage.prompt_tokens,
                "completion_tokens": response.usage.completion_tokens,
                "total_tokens": response.usage.total_tokens,
            }

        reasoning_content = getattr(message, "reasoning_content", None) or None

        return LLMResponse(
            content=message.content,
            tool_calls=tool_calls,
            finish_reason=choice.finish_reason or "stop",
            usage=usage,
            reasoning_content=reasoning_content,
        )

    def get_default_model(self) -> str:
        """Get the default model."""
        return self.default_model
