"""Provider registry — resolves which provider handles a resource."""

from __future__ import annotations

import logging

from converge.errors import ProviderNotFoundError
from converge.models import ResourceAddress, ResourceNode, StateEntry
from converge.providers.base import ResourceProvider

logger = logging.getLogger(__name__)


def parse_provider_name(resource_type: str, provider_ref: str | None = None) -> str:
    """Provider for a resource: an explicit ref wins, else the type prefix ('memory_file' -> 'memory')."""
    if provider_ref:
        return provider_ref
    return resource_type.split("_", 1)[0].lower()


class ProviderRegistry:
    """Registry of named providers."""

    def __init__(self):
        self._providers: dict[str, ResourceProvider] = {}

    def register(self, name: str, provider: ResourceProvider):
        if not provider.name:
            provider.name = name
        self._providers[name] = provider
        logger.debug(f"Registered provider '{name}' ({type(provider).__name__})")

    def get(self, name: str) -> ResourceProvider:
        provider = self._providers.get(name)
        if provider is None:
            raise ProviderNotFoundError(name)
        return provider

    def for_address(self, address: ResourceAddress, provider_ref: str | None = None) -> ResourceProvider:
        return self.get(parse_provider_name(address.type, provider_ref))

    def for_node(self, node: ResourceNode) -> ResourceProvider:
        return self.for_address(node.address, node.provider_ref)

    def for_entry(self, entry: StateEntry) -> ResourceProvider:
        return self.for_address(entry.address, entry.provider_ref)

    def __contains__(self, name: str) -> bool:
        return name in self._providers

    def names(self) -> list[str]:
        return list(self._providers.keys())
