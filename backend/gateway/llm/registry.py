"""Model routing table.

Maps public model identifiers to the provider adapter that serves them and
the provider-specific model id.
"""

import logging
from dataclasses import dataclass

from .errors import UnsupportedModelError
from .providers.anthropic import AnthropicProvider
from .providers.base import LLMProvider
from .providers.gemini import GeminiProvider

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ModelRoute:
    """Where a public model id is served."""

    model: str
    provider: str
    provider_model: str
    display_name: str


SUPPORTED_MODELS: dict[str, ModelRoute] = {
    route.model: route
    for route in [
        ModelRoute("anthropic/claude-opus-4.5", "anthropic", "claude-opus-4-5-20251101", "Claude Opus 4.5"),
        ModelRoute("anthropic/claude-sonnet-4.5", "anthropic", "claude-sonnet-4-5-20250929", "Claude Sonnet 4.5"),
        ModelRoute("anthropic/claude-haiku-4.5", "anthropic", "claude-haiku-4-5-20251001", "Claude Haiku 4.5"),
        ModelRoute("google/gemini-3-pro-preview", "gemini", "gemini-3-pro-preview", "Gemini 3 Pro Preview"),
        ModelRoute("google/gemini-3-flash-preview", "gemini", "gemini-3-flash-preview", "Gemini 3 Flash Preview"),
    ]
}


class ProviderRegistry:
    """Resolves a model id to an adapter instance.

    Adapters are created once and shared for the process lifetime. Tests
    pass their own ``providers`` mapping (and optionally ``routes``).
    """

    def __init__(
        self,
        providers: dict[str, LLMProvider],
        routes: dict[str, ModelRoute] | None = None,
    ):
        self._providers = providers
        self._routes = routes if routes is not None else SUPPORTED_MODELS

    @classmethod
    def from_keys(
        cls,
        anthropic_api_key: str | None = None,
        gemini_api_key: str | None = None,
        timeout: float = 60.0,
    ) -> "ProviderRegistry":
        """Build the default registry with both backends."""
        return cls({
            "anthropic": AnthropicProvider(api_key=anthropic_api_key, timeout=timeout),
            "gemini": GeminiProvider(api_key=gemini_api_key, timeout=timeout),
        })

    @property
    def models(self) -> list[ModelRoute]:
        return list(self._routes.values())

    def is_supported(self, model: str) -> bool:
        return model in self._routes

    def resolve(self, model: str) -> tuple[LLMProvider, str]:
        """Return the adapter and provider model id for ``model``.

        Raises:
            UnsupportedModelError: Model is not in the routing table.
        """
        route = self._routes.get(model)
        if route is None or route.provider not in self._providers:
            raise UnsupportedModelError(model, list(self._routes))
        logger.debug(f"Routing {model} to {route.provider}:{route.provider_model}")
        return self._providers[route.provider], route.provider_model
