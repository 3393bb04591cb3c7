"""Abstract base class for LLM providers.

Defines the interface that all LLM providers must implement.
"""

from abc import ABC, abstractmethod
from collections.abc import AsyncIterator

from ..models import ChatChunk, ChatParams, ChatResult


class LLMProvider(ABC):
    """Base interface for LLM providers.

    Each adapter translates ``ChatParams`` into one backend's request shape
    and normalizes the backend's responses, stop reasons and errors.
    """

    @property
    @abstractmethod
    def name(self) -> str:
        """Provider identifier: 'anthropic', 'gemini'."""
        ...

    @abstractmethod
    async def chat(self, params: ChatParams) -> ChatResult:
        """Send a completion request and return the full result.

        Args:
            params: Provider-neutral chat parameters.

        Returns:
            Normalized chat result.

        Raises:
            AuthenticationError: Invalid or missing API key.
            RateLimitError: Rate limit exceeded.
            ProviderUnavailableError: Upstream outage or timeout.
            InvalidRequestError: Malformed request.
            ContentFilterError: Request refused by safety filters.
        """
        ...

    @abstractmethod
    def chat_stream(self, params: ChatParams) -> AsyncIterator[ChatChunk]:
        """Stream normalized chunks.

        Partial tool-call arguments are buffered by the adapter; each
        yielded tool call is complete. The last chunk carries the finish
        reason and usage.

        Raises:
            Same errors as ``chat``.
        """
        ...
