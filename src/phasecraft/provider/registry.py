"""Explicit name -> factory registry for provider adapters."""

from __future__ import annotations

from collections.abc import Callable
from typing import Any

from phasecraft.errors import NotFoundError
from phasecraft.provider.anthropic import AnthropicProvider
from phasecraft.provider.base import Provider
from phasecraft.provider.ollama import OllamaProvider
from phasecraft.provider.openai import KimiProvider, OpenAIProvider, RequestyProvider, ZaiProvider

ProviderFactory = Callable[..., Provider]


class ProviderRegistry:
    """Instances are independent; nothing is shared at module level."""

    def __init__(self) -> None:
        self._factories: dict[str, ProviderFactory] = {}

    def register(self, name: str, factory: ProviderFactory) -> None:
        if not name:
            raise ValueError("provider name cannot be empty")
        self._factories[name] = factory

    def names(self) -> list[str]:
        return sorted(self._factories)

    def __contains__(self, name: object) -> bool:
        return name in self._factories

    def create(self, name: str, **options: Any) -> Provider:
        factory = self._factories.get(name)
        if factory is None:
            raise NotFoundError(f"provider factory not found for: {name}")
        return factory(**options)


def default_provider_registry() -> ProviderRegistry:
    """Fresh registry populated with every bundled adapter."""

    registry = ProviderRegistry()
    registry.register("anthropic", AnthropicProvider)
    registry.register("kimi", KimiProvider)
    registry.register("ollama", OllamaProvider)
    registry.register("openai", OpenAIProvider)
    registry.register("requesty", RequestyProvider)
    registry.register("zai", ZaiProvider)
    return registry
