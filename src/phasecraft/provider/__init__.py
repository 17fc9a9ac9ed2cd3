"""LLM provider adapters, the resilience core, and the dispatch bridge."""

from phasecraft.provider.base import (
    BaseProvider,
    Model,
    Provider,
    QuotaInfo,
    RateLimitInfo,
    Response,
)
from phasecraft.provider.bridge import ProviderBridge
from phasecraft.provider.registry import ProviderRegistry, default_provider_registry

__all__ = [
    "BaseProvider",
    "Model",
    "Provider",
    "ProviderBridge",
    "ProviderRegistry",
    "QuotaInfo",
    "RateLimitInfo",
    "Response",
    "default_provider_registry",
]
