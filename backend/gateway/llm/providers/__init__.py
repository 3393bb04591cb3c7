"""LLM provider implementations.

This package contains provider-specific implementations of the LLMProvider interface.
"""

from .anthropic import AnthropicProvider
from .base import LLMProvider
from .gemini import GeminiProvider

__all__ = [
    "LLMProvider",
    "AnthropicProvider",
    "GeminiProvider",
]
