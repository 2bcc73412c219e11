import logging
from typing import Dict, Iterable, List, Optional

from ..config import Settings
from .anthropic_provider import AnthropicProvider
from .base import GenerationProvider, ProviderConfigurationError
from .openai_provider import OpenAIProvider

logger = logging.getLogger(__name__)


class ProviderRegistry:
    """Provider instances by name; only providers with credentials are registered."""

    def __init__(self, providers: Optional[Iterable[GenerationProvider]] = None):
        self._providers: Dict[str, GenerationProvider] = {}
        for provider in providers or ():
            self.register(provider)

    def register(self, provider: GenerationProvider):
        self._providers[provider.name] = provider

    def get(self, name: str) -> GenerationProvider:
        try:
            return self._providers[name]
        except KeyError:
            raise ProviderConfigurationError(
                f"Provider '{name}' is not configured (missing API key)", name
            ) from None

    def names(self) -> List[str]:
        return sorted(self._providers)

    @classmethod
    def from_settings(cls, settings: Settings) -> "ProviderRegistry":
        defaults = dict(
            default_max_tokens=settings.generation_max_tokens,
            default_timeout=settings.generation_timeout_seconds,
            default_temperature=settings.generation_temperature,
        )
        registry = cls()
        if settings.openai_api_key:
            registry.register(
                OpenAIProvider(settings.openai_api_key, default_model=settings.openai_model, **defaults)
            )
        if settings.anthropic_api_key:
            registry.register(
                AnthropicProvider(settings.anthropic_api_key, default_model=settings.anthropic_model, **defaults)
            )
        if not registry.names():
            logger.warning("no generation provider has an API key; every job will fail")
        return registry

    async def aclose(self):
        for provider in self._providers.values():
            await provider.aclose()
