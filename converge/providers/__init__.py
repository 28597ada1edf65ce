"""Provider layer — the engine's view of live resources."""

from converge.providers.base import ResourceProvider
from converge.providers.memory import InMemoryProvider
from converge.providers.registry import ProviderRegistry, parse_provider_name
from converge.providers.setup import create_default_registry

__all__ = [
    "InMemoryProvider",
    "ProviderRegistry",
    "ResourceProvider",
    "create_default_registry",
    "parse_provider_name",
]
