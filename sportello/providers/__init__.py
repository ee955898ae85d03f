"""LLM provider abstraction module."""

from sportello.providers.base import LLMProvider, LLMResponse, ToolCallRequest
from sportello.providers.errors import ErrorKind, classify_exception, classify_status
from sportello.providers.litellm_provider import LiteLLMProvider

__all__ = [
    "ErrorKind",
    "LLMProvider",
    "LLMResponse",
    "LiteLLMProvider",
    "ToolCallRequest",
    "classify_exception",
    "classify_status",
]
