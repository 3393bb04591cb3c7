"""LLM provider abstraction layer.

This module provides a vendor-neutral interface over the upstream completion
backends (Anthropic Claude, Google Gemini) and the routing table that picks
one of them per model id.
"""

from .errors import (
    AuthenticationError,
    ContentFilterError,
    InvalidRequestError,
    LLMError,
    ProviderUnavailableError,
    RateLimitError,
    UnsupportedModelError,
)
from .models import (
    ChatChunk,
    ChatMessage,
    ChatParams,
    ChatResult,
    Tool,
    ToolCall,
    Usage,
)
from .registry import SUPPORTED_MODELS, ModelRoute, ProviderRegistry

__all__ = [
    "ProviderRegistry",
    "ModelRoute",
    "SUPPORTED_MODELS",
    "ChatParams",
    "ChatMessage",
    "ChatResult",
    "ChatChunk",
    "Tool",
    "ToolCall",
    "Usage",
    "LLMError",
    "AuthenticationError",
    "RateLimitError",
    "ProviderUnavailableError",
    "InvalidRequestError",
    "ContentFilterError",
    "UnsupportedModelError",
]
