"""Test provider registry and the in-memory provider."""

import asyncio

import pytest

from converge.errors import ProviderNotFoundError
from converge.models import ResourceAddress, ResourceNode, StateEntry
from converge.providers import InMemoryProvider, ProviderRegistry, create_default_registry, parse_provider_name


def node(key: str, **attributes) -> ResourceNode:
    return ResourceNode(address=ResourceAddress.parse(key), desired_attributes=attributes)


def test_parse_provider_name():
    assert parse_provider_name("memory_file") == "memory"
    assert parse_provider_name("AWS_instance") == "aws"
    assert parse_provider_name("memory_file", "custom") == "custom"
    assert parse_provider_name("plain") == "plain"


def test_registry_lookup():
    registry = ProviderRegistry()
    provider = InMemoryProvider(name="")
    registry.register("memory", provider)
    assert provider.name == "memory"
    assert "memory" in registry
    assert registry.for_node(node("memory_file.a")) is provider
    assert registry.for_address(ResourceAddress.parse("other_file.a"), "memory") is provider
    with pytest.raises(ProviderNotFoundError):
        registry.get("aws")


def test_default_registry():
    registry = create_default_registry()
    assert registry.names() == ["memory"]


def test_memory_provider_crud():
    provider = InMemoryProvider(computed={"size": lambda attrs: len(attrs.get("content", ""))})

    async def run():
        created = await provider.create(node("memory_file.a", content="abc"))
        assert created.applied_attributes == {"content": "abc", "id": created.provider_id, "size": 3}

        updated = await provider.update(created, node("memory_file.a", content="abcdef"))
        assert updated.applied_attributes["size"] == 6
        assert updated.provider_id == created.provider_id

        live = await provider.read(created)
        assert live.applied_attributes["content"] == "abcdef"

        await provider.destroy(created)
        assert await provider.read(created) is None
        # Destroying something already gone is fine.
        await provider.destroy(created)

    asyncio.run(run())
    assert provider.operations() == [
        "create memory_file.a",
        "update memory_file.a",
        "destroy memory_file.a",
        "destroy memory_file.a",
    ]


def test_memory_provider_diff():
    provider = InMemoryProvider(force_new={"name"})
    entry = StateEntry(address=ResourceAddress.parse("memory_vm.a"), applied_attributes={"name": "a", "size": 1})

    async def run():
        return (
            await provider.diff(entry, node("memory_vm.a", name="a", size=2)),
            await provider.diff(entry, node("memory_vm.a", name="b", size=1)),
            await provider.diff(entry, node("memory_vm.a", size=1)),
        )

    assert asyncio.run(run()) == (False, True, False)


def test_fault_injection_fires_once():
    provider = InMemoryProvider()
    provider.fail_on("create", "memory_file.a", ValueError("quota exceeded"))

    async def run():
        with pytest.raises(ValueError):
            await provider.create(node("memory_file.a"))
        return await provider.create(node("memory_file.a"))

    created = asyncio.run(run())
    assert created.provider_id in provider.resources
    assert provider.in_flight == 0


def test_update_of_missing_resource_fails():
    provider = InMemoryProvider()
    entry = StateEntry(address=ResourceAddress.parse("memory_file.a"), provider_id="gone")
    with pytest.raises(LookupError):
        asyncio.run(provider.update(entry, node("memory_file.a")))
