"""Wire built-in providers and create the default registry."""

from converge.providers.memory import InMemoryProvider
from converge.providers.registry import ProviderRegistry


def create_default_registry() -> ProviderRegistry:
    """Create a registry with all built-in providers."""
    registry = ProviderRegistry()
    registry.register("memory", InMemoryProvider(name="memory", force_new={"name"}))
    return registry
