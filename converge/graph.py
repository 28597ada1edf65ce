"""Resource graph — desired nodes, their edges, and a deterministic topological order."""

from __future__ import annotations

import heapq
import logging
from collections.abc import Callable, Hashable, Iterable, Mapping
from typing import TypeVar

from converge.errors import CycleDetectedError, DuplicateAddressError, UnknownReferenceError
from converge.models import DEFAULT_WORKSPACE, ResourceAddress, ResourceNode

logger = logging.getLogger(__name__)

T = TypeVar("T", bound=Hashable)


class OrderingCycle(Exception):
    """Internal signal from ``topological_order``; callers translate it."""

    def __init__(self, cycle: list):
        self.cycle = cycle
        super().__init__(f"cycle of length {len(cycle) - 1}")


def topological_order(deps: Mapping[T, Iterable[T]], key: Callable[[T], object]) -> list[T]:
    """Kahn's algorithm; ties broken by ``key`` so the same input always yields the same order.

    ``deps[n]`` lists what ``n`` must come after. Raises OrderingCycle naming one real cycle.
    """
    remaining = {n: set(d) for n, d in deps.items()}
    dependents: dict[T, set[T]] = {n: set() for n in remaining}
    for n, ds in remaining.items():
        for d in ds:
            dependents[d].add(n)

    ready = [(key(n), i, n) for i, n in enumerate(remaining) if not remaining[n]]
    heapq.heapify(ready)
    counter = len(remaining)
    order: list[T] = []
    while ready:
        _, _, n = heapq.heappop(ready)
        order.append(n)
        for child in dependents[n]:
            remaining[child].discard(n)
            if not remaining[child]:
                counter += 1
                heapq.heappush(ready, (key(child), counter, child))

    if len(order) != len(remaining):
        placed = set(order)
        stuck = {n for n in remaining if n not in placed}
        raise OrderingCycle(find_cycle(deps, stuck, key))
    return order


def find_cycle(deps: Mapping[T, Iterable[T]], within: set[T], key: Callable[[T], object]) -> list[T]:
    # Every node left over by Kahn still waits on another leftover node, so
    # following any such edge must eventually revisit a node.
    node = min(within, key=key)
    path: list[T] = []
    seen: dict[T, int] = {}
    while node not in seen:
        seen[node] = len(path)
        path.append(node)
        node = min((d for d in deps[node] if d in within), key=key)
    return path[seen[node]:] + [node]


class ResolvedGraph:
    """Immutable, ordered view of a validated resource graph."""

    def __init__(
        self,
        workspace: str,
        order: list[ResourceNode],
        dependencies: dict[ResourceAddress, frozenset[ResourceAddress]],
    ):
        self.workspace = workspace
        self.nodes: tuple[ResourceNode, ...] = tuple(order)
        self._by_key = {n.address.key: n for n in self.nodes}
        self._position = {n.address.key: i for i, n in enumerate(self.nodes)}
        self._deps = dependencies
        dependents: dict[ResourceAddress, set[ResourceAddress]] = {n.address: set() for n in self.nodes}
        for addr, ds in dependencies.items():
            for d in ds:
                dependents[d].add(addr)
        self._dependents = {a: frozenset(s) for a, s in dependents.items()}

    def __len__(self) -> int:
        return len(self.nodes)

    def __contains__(self, address: ResourceAddress | str) -> bool:
        return self._key(address) in self._by_key

    def __iter__(self):
        return iter(self.nodes)

    @staticmethod
    def _key(address: ResourceAddress | str) -> str:
        return address if isinstance(address, str) else address.key

    @property
    def order(self) -> list[ResourceAddress]:
        return [n.address for n in self.nodes]

    def get(self, address: ResourceAddress | str) -> ResourceNode | None:
        return self._by_key.get(self._key(address))

    def position(self, address: ResourceAddress | str) -> int:
        return self._position[self._key(address)]

    def dependencies(self, address: ResourceAddress) -> frozenset[ResourceAddress]:
        return self._deps.get(self._by_key[address.key].address, frozenset())

    def dependents(self, address: ResourceAddress) -> frozenset[ResourceAddress]:
        """Reverse index: resources that depend directly on ``address``."""
        return self._dependents.get(self._by_key[address.key].address, frozenset())

    def ancestors(self, address: ResourceAddress) -> set[ResourceAddress]:
        return self._walk(address, self.dependencies)

    def descendants(self, address: ResourceAddress) -> set[ResourceAddress]:
        return self._walk(address, self.dependents)

    @staticmethod
    def _walk(start: ResourceAddress, step: Callable[[ResourceAddress], Iterable[ResourceAddress]]) -> set[ResourceAddress]:
        seen: set[ResourceAddress] = set()
        stack = list(step(start))
        while stack:
            a = stack.pop()
            if a not in seen:
                seen.add(a)
                stack.extend(step(a))
        return seen


class ResourceGraph:
    """Mutable builder for the desired resource graph of one workspace."""

    def __init__(self, nodes: Iterable[ResourceNode] = (), workspace: str = DEFAULT_WORKSPACE):
        self.workspace = workspace
        self._nodes: dict[ResourceAddress, ResourceNode] = {}
        for node in nodes:
            self.add_node(node)

    def add_node(self, node: ResourceNode) -> None:
        if node.address.workspace != self.workspace:
            raise ValueError(
                f"{node.address} belongs to workspace '{node.address.workspace}', "
                f"graph is for '{self.workspace}'"
            )
        if node.address in self._nodes:
            raise DuplicateAddressError(node.address)
        self._nodes[node.address] = node

    def get(self, address: ResourceAddress) -> ResourceNode | None:
        return self._nodes.get(address)

    def __len__(self) -> int:
        return len(self._nodes)

    def __contains__(self, address: ResourceAddress) -> bool:
        return address in self._nodes

    def resolve(self) -> ResolvedGraph:
        """Validate edges (explicit and implied by references) and order the nodes."""
        deps: dict[ResourceAddress, frozenset[ResourceAddress]] = {}
        for addr, node in self._nodes.items():
            edges = set(node.depends_on) | node.references()
            for target in sorted(edges, key=lambda a: a.key):
                if target not in self._nodes:
                    raise UnknownReferenceError(addr, target)
            deps[addr] = frozenset(edges)

        try:
            order = topological_order(deps, key=lambda a: a.key)
        except OrderingCycle as e:
            raise CycleDetectedError(e.cycle) from None

        logger.debug(f"Resolved graph for '{self.workspace}': {[a.key for a in order]}")
        return ResolvedGraph(self.workspace, [self._nodes[a] for a in order], deps)

    @classmethod
    def from_dicts(cls, resources: Iterable[dict], workspace: str = DEFAULT_WORKSPACE) -> ResourceGraph:
        return cls((ResourceNode.from_dict(r, workspace) for r in resources), workspace=workspace)
