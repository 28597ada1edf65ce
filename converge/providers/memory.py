"""In-memory provider — live resources kept in a dict, with call tracing and fault injection."""

from __future__ import annotations

import asyncio
import copy
import logging
from contextlib import asynccontextmanager
from dataclasses import replace
from typing import Any, Callable, Iterable

from converge.models import ResourceAddress, ResourceNode, StateEntry, generate_id, values_equal
from converge.providers.base import ResourceProvider

logger = logging.getLogger(__name__)


class InMemoryProvider(ResourceProvider):
    """Scratch resources that live only as long as the provider instance.

    ``force_new`` names top-level attributes that cannot change in place.
    ``computed`` maps attribute names to functions of the stored attributes,
    evaluated after every create/update (the provider-assigned ``id`` is always set).
    """

    def __init__(
        self,
        name: str = "memory",
        force_new: Iterable[str] = (),
        computed: dict[str, Callable[[dict[str, Any]], Any]] | None = None,
        delay: float = 0.0,
    ):
        self.name = name
        self.force_new = set(force_new)
        self.computed = computed or {}
        self.delay = delay
        self.resources: dict[str, dict[str, Any]] = {}
        self.calls: list[tuple[str, str]] = []
        self.in_flight = 0
        self.max_in_flight = 0
        self._failures: dict[tuple[str, str], Exception] = {}

    # ------------------------------------------------------------------
    # Test / operator hooks
    # ------------------------------------------------------------------

    def fail_on(self, operation: str, address: str, error: Exception | None = None):
        """Make the next ``operation`` on ``address`` raise."""
        self._failures[(operation, address)] = error or RuntimeError(f"injected {operation} failure")

    def put(self, attributes: dict[str, Any], provider_id: str | None = None) -> str:
        """Create a resource out-of-band (as if someone clicked it into existence)."""
        pid = provider_id or f"{self.name}-{generate_id()}"
        self.resources[pid] = {**copy.deepcopy(attributes), "id": pid}
        return pid

    def operations(self) -> list[str]:
        return [f"{op} {addr}" for op, addr in self.calls]

    # ------------------------------------------------------------------
    # ResourceProvider
    # ------------------------------------------------------------------

    async def create(self, node: ResourceNode) -> StateEntry:
        async with self._call("create", node.address):
            pid = f"{node.address.type}-{generate_id()}"
            self.resources[pid] = self._materialize(pid, node.desired_attributes)
            return StateEntry(
                address=node.address,
                applied_attributes=copy.deepcopy(self.resources[pid]),
                provider_id=pid,
            )

    async def read(self, entry: StateEntry) -> StateEntry | None:
        attrs = self.resources.get(entry.provider_id)
        if attrs is None:
            return None
        return replace(entry, applied_attributes=copy.deepcopy(attrs))

    async def update(self, entry: StateEntry, node: ResourceNode) -> StateEntry:
        async with self._call("update", node.address):
            if entry.provider_id not in self.resources:
                raise LookupError(f"{entry.provider_id} does not exist")
            self.resources[entry.provider_id] = self._materialize(entry.provider_id, node.desired_attributes)
            return replace(entry, applied_attributes=copy.deepcopy(self.resources[entry.provider_id]))

    async def destroy(self, entry: StateEntry) -> None:
        async with self._call("destroy", entry.address):
            self.resources.pop(entry.provider_id, None)

    async def diff(self, entry: StateEntry, node: ResourceNode) -> bool:
        for key in self.force_new:
            if key not in node.desired_attributes:
                continue
            if key not in entry.applied_attributes:
                return True
            if not values_equal(node.desired_attributes[key], entry.applied_attributes[key]):
                return True
        return False

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _materialize(self, pid: str, desired: dict[str, Any]) -> dict[str, Any]:
        attrs = {**copy.deepcopy(desired), "id": pid}
        for key, fn in self.computed.items():
            attrs[key] = fn(attrs)
        return attrs

    @asynccontextmanager
    async def _call(self, operation: str, address: ResourceAddress):
        self.calls.append((operation, address.key))
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
            error = self._failures.pop((operation, address.key), None)
            if error is not None:
                raise error
            yield
        finally:
            self.in_flight -= 1
