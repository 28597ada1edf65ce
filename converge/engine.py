"""Engine — public entry point: plan, apply, import, refresh and state/workspace commands."""

from __future__ import annotations

import asyncio
import dataclasses
import logging
import os
import socket
import time
from collections.abc import Iterable
from dataclasses import dataclass
from typing import Any, Callable

from converge import config
from converge.errors import (
    LockHeldError,
    ProviderError,
    ResourceAlreadyManagedError,
    ResourceNotFoundError,
    StateError,
    WorkspaceExistsError,
    WorkspaceNotEmptyError,
    WorkspaceNotFoundError,
)
from converge.events import EventBus
from converge.executor import Executor
from converge.graph import ResolvedGraph, ResourceGraph
from converge.lifecycle import LifecycleEvaluator
from converge.locks import LockManager
from converge.models import (
    AttributePath,
    LifecyclePolicy,
    Lock,
    Plan,
    ResourceAddress,
    StateEntry,
    StateSnapshot,
    diff_paths,
    generate_id,
)
from converge.planner import Planner
from converge.providers.registry import ProviderRegistry
from converge.providers.setup import create_default_registry
from converge.state.base import StateBackend, validate_workspace_name
from converge.state.factory import create_backend

logger = logging.getLogger(__name__)

GraphInput = ResolvedGraph | ResourceGraph | Iterable[dict]
AddressInput = ResourceAddress | str


@dataclass
class ApplyResult:
    plan: Plan
    state: StateSnapshot

    def to_dict(self) -> dict:
        return {"plan": self.plan.to_dict(), "state": self.state.to_dict()}


def default_holder_id() -> str:
    return f"{socket.gethostname()}:{os.getpid()}:{generate_id()[:6]}"


class Engine:
    """Reconciles desired resource graphs against recorded state, one workspace at a time.

    ``plan`` is speculative and takes no lock. Everything that writes state
    (apply, import, refresh, state surgery) holds the workspace lock for its
    whole duration and persists through the backend's serial check.
    """

    def __init__(
        self,
        backend: StateBackend | None = None,
        providers: ProviderRegistry | None = None,
        event_bus: EventBus | None = None,
        parallelism: int | None = None,
        holder_id: str | None = None,
        lock_timeout: float | None = None,
        lock_retry_interval: float | None = None,
    ):
        self.backend = backend or create_backend()
        self.providers = providers or create_default_registry()
        self.event_bus = event_bus or EventBus(config.EVENT_LOG)
        self.parallelism = parallelism or config.MAX_PARALLELISM
        self.holder_id = holder_id or default_holder_id()
        self.lock_timeout = lock_timeout
        self.locks = LockManager(self.backend, self.event_bus, retry_interval=lock_retry_interval)
        self.evaluator = LifecycleEvaluator()
        self.planner = Planner(self.providers, self.evaluator)

    # ------------------------------------------------------------------
    # Plan / apply
    # ------------------------------------------------------------------

    async def plan(
        self,
        graph: GraphInput,
        workspace: str | None = None,
        *,
        destroy: bool = False,
        targets: Iterable[AddressInput] | None = None,
        replace: Iterable[AddressInput] | None = None,
        refresh: bool = False,
    ) -> Plan:
        """Speculative plan against the latest stored snapshot. Takes no lock."""
        resolved = self._resolve_graph(graph, workspace)
        snapshot = self._load(resolved.workspace)
        drift: list[dict] = []
        if refresh:
            snapshot, drift = await self._read_live(snapshot)
        plan = await self._plan(resolved, snapshot, destroy=destroy, targets=targets, replace=replace)
        plan.drift = drift
        return plan

    async def apply(
        self,
        plan: Plan,
        *,
        parallelism: int | None = None,
        cancel: asyncio.Event | None = None,
    ) -> StateSnapshot:
        """Apply a previously computed plan. Raises StaleSnapshotError if state moved since."""
        async with self.locks.hold(plan.workspace_id, self.holder_id, "apply", self.lock_timeout):
            snapshot = self.backend.load(plan.workspace_id)
            return await self._execute(plan, snapshot, parallelism, cancel)

    async def plan_and_apply(
        self,
        graph: GraphInput,
        workspace: str | None = None,
        *,
        destroy: bool = False,
        targets: Iterable[AddressInput] | None = None,
        replace: Iterable[AddressInput] | None = None,
        parallelism: int | None = None,
        cancel: asyncio.Event | None = None,
    ) -> ApplyResult:
        """Plan and apply under one lock, so nothing can slip in between."""
        resolved = self._resolve_graph(graph, workspace)
        self._ensure_workspace(resolved.workspace)
        operation = "destroy" if destroy else "apply"
        async with self.locks.hold(resolved.workspace, self.holder_id, operation, self.lock_timeout):
            snapshot = self.backend.load(resolved.workspace)
            plan = await self._plan(resolved, snapshot, destroy=destroy, targets=targets, replace=replace)
            state = await self._execute(plan, snapshot, parallelism, cancel)
        return ApplyResult(plan=plan, state=state)

    async def destroy(
        self,
        graph: GraphInput | None = None,
        workspace: str | None = None,
        *,
        targets: Iterable[AddressInput] | None = None,
        parallelism: int | None = None,
        cancel: asyncio.Event | None = None,
    ) -> ApplyResult:
        """Destroy everything recorded in the workspace (or just ``targets`` and their dependents).

        Passing the current graph lets its lifecycle policies (prevent_destroy) apply.
        """
        if graph is None:
            graph = ResourceGraph(workspace=workspace or config.DEFAULT_WORKSPACE)
        return await self.plan_and_apply(
            graph, workspace, destroy=True, targets=targets, parallelism=parallelism, cancel=cancel
        )

    async def _plan(
        self,
        graph: ResolvedGraph,
        snapshot: StateSnapshot,
        *,
        destroy: bool,
        targets: Iterable[AddressInput] | None,
        replace: Iterable[AddressInput] | None,
    ) -> Plan:
        plan = await self.planner.plan(graph, snapshot, destroy=destroy, targets=targets, replace=replace)
        self._emit(
            "plan.created",
            plan.workspace_id,
            plan_id=plan.id,
            serial=plan.prior_serial,
            summary=plan.summary(),
            destroy=destroy,
        )
        return plan

    async def _execute(
        self,
        plan: Plan,
        snapshot: StateSnapshot,
        parallelism: int | None,
        cancel: asyncio.Event | None,
    ) -> StateSnapshot:
        executor = Executor(
            self.providers,
            self.backend,
            parallelism=parallelism or self.parallelism,
            event_bus=self.event_bus,
            evaluator=self.evaluator,
        )
        return await executor.apply(plan, snapshot, cancel)

    # ------------------------------------------------------------------
    # Import / refresh
    # ------------------------------------------------------------------

    async def import_resource(
        self,
        address: AddressInput,
        provider_id: str,
        workspace: str | None = None,
        *,
        provider_ref: str | None = None,
        lifecycle: LifecyclePolicy | None = None,
    ) -> StateEntry:
        """Adopt an existing live resource into state without touching it."""
        ws = workspace or config.DEFAULT_WORKSPACE
        address = self._address(address, ws)
        self._ensure_workspace(ws)
        async with self.locks.hold(ws, self.holder_id, "import", self.lock_timeout):
            snapshot = self.backend.load(ws)
            if snapshot.get(address) is not None:
                raise ResourceAlreadyManagedError(address)

            provider = self.providers.for_address(address, provider_ref)
            handle = StateEntry(address=address, provider_id=provider_id, provider_ref=provider_ref)
            live = await provider.read(handle)
            if live is None:
                raise ProviderError(address, "import", LookupError(f"no live resource with id {provider_id}"))

            entry = dataclasses.replace(
                live,
                address=address,
                provider_id=provider_id,
                provider_ref=provider_ref,
                lifecycle=lifecycle or LifecyclePolicy(),
                schema_version=provider.schema_version,
                last_applied_at=time.time(),
            )
            self.backend.save(snapshot.with_entry(entry))
        logger.info(f"Imported {address} ({provider_id}) into '{ws}'")
        self._emit("state.imported", ws, address=address.key, provider_id=provider_id)
        return entry

    async def refresh(self, workspace: str | None = None) -> tuple[StateSnapshot, list[dict]]:
        """Re-read every recorded resource from its provider and persist what changed."""
        ws = workspace or config.DEFAULT_WORKSPACE
        self._ensure_workspace(ws)
        async with self.locks.hold(ws, self.holder_id, "refresh", self.lock_timeout):
            snapshot = self.backend.load(ws)
            refreshed, drift = await self._read_live(snapshot)
            if drift:
                snapshot = snapshot.evolve(entries=refreshed.entries)
                self.backend.save(snapshot)
        logger.info(f"Refreshed '{ws}': {len(drift)} drifted resource(s)")
        self._emit("state.refreshed", ws, serial=snapshot.serial, drift=drift)
        return snapshot, drift

    async def _read_live(self, snapshot: StateSnapshot) -> tuple[StateSnapshot, list[dict]]:
        """In-memory copy of ``snapshot`` with live attributes; serial is left untouched."""
        entries: dict[str, StateEntry] = {}
        drift: list[dict] = []
        for key, entry in sorted(snapshot.entries.items()):
            live = await self.providers.for_entry(entry).read(entry)
            if live is None:
                drift.append({"address": key, "change": "deleted"})
                continue
            paths = diff_paths(live.applied_attributes, entry.applied_attributes)
            paths += [AttributePath((k,)) for k in entry.applied_attributes if k not in live.applied_attributes]
            if paths:
                drift.append({"address": key, "change": "modified", "paths": sorted(str(p) for p in paths)})
            entries[key] = dataclasses.replace(entry, applied_attributes=live.applied_attributes)
        return dataclasses.replace(snapshot, entries=entries), drift

    # ------------------------------------------------------------------
    # Workspaces
    # ------------------------------------------------------------------

    def list_workspaces(self) -> list[str]:
        self._ensure_workspace(config.DEFAULT_WORKSPACE)
        return self.backend.list_workspaces()

    def new_workspace(self, name: str) -> StateSnapshot:
        validate_workspace_name(name)
        snapshot = self.backend.create_workspace(name)
        logger.info(f"Created workspace '{name}'")
        self._emit("workspace.created", name, lineage_id=snapshot.lineage_id)
        return snapshot

    async def delete_workspace(self, name: str, force: bool = False):
        if name == config.DEFAULT_WORKSPACE:
            raise StateError(f"The '{name}' workspace cannot be deleted")
        held = self.backend.get_lock(name)
        if held is not None:
            raise LockHeldError(name, held.holder_id, held.acquired_at, held.operation_kind)

        async with self.locks.hold(name, self.holder_id, "workspace-delete", self.lock_timeout):
            snapshot = self.backend.load(name)
            if len(snapshot) and not force:
                raise WorkspaceNotEmptyError(name, len(snapshot))
            self.backend.delete_workspace(name)
        logger.info(f"Deleted workspace '{name}' ({len(snapshot)} resource(s) forgotten)")
        self._emit("workspace.deleted", name, forgotten=len(snapshot), force=force)

    # ------------------------------------------------------------------
    # State inspection & surgery
    # ------------------------------------------------------------------

    def state(self, workspace: str | None = None) -> StateSnapshot:
        return self._load(workspace or config.DEFAULT_WORKSPACE)

    def state_list(self, workspace: str | None = None) -> list[str]:
        return [a.key for a in self.state(workspace).addresses()]

    def state_show(self, address: AddressInput, workspace: str | None = None) -> StateEntry:
        ws = workspace or config.DEFAULT_WORKSPACE
        entry = self.state(ws).get(self._address(address, ws))
        if entry is None:
            raise ResourceNotFoundError(address)
        return entry

    async def state_rm(self, address: AddressInput, workspace: str | None = None) -> StateEntry:
        """Forget a resource without destroying it."""
        ws = workspace or config.DEFAULT_WORKSPACE
        key = self._address(address, ws).key
        removed: list[StateEntry] = []

        def mutate(snapshot: StateSnapshot) -> StateSnapshot:
            entry = snapshot.get(key)
            if entry is None:
                raise ResourceNotFoundError(key)
            removed.append(entry)
            return snapshot.without_entry(key)

        await self._mutate(ws, "state-rm", mutate)
        self._emit("state.rm", ws, address=key)
        return removed[0]

    async def state_mv(self, source: AddressInput, destination: AddressInput, workspace: str | None = None) -> StateEntry:
        """Rename a recorded address, rewriting dependency edges that point at it."""
        ws = workspace or config.DEFAULT_WORKSPACE
        src = self._address(source, ws)
        dst = self._address(destination, ws)

        def mutate(snapshot: StateSnapshot) -> StateSnapshot:
            entry = snapshot.get(src)
            if entry is None:
                raise ResourceNotFoundError(src)
            if snapshot.get(dst) is not None:
                raise ResourceAlreadyManagedError(dst)
            entries: dict[str, StateEntry] = {}
            for key, other in snapshot.entries.items():
                if key == src.key:
                    continue
                if src in other.depends_on:
                    other = dataclasses.replace(other, depends_on=(other.depends_on - {src}) | {dst})
                entries[key] = other
            entries[dst.key] = dataclasses.replace(entry, address=dst)
            return snapshot.evolve(entries=entries)

        snapshot = await self._mutate(ws, "state-mv", mutate)
        self._emit("state.mv", ws, source=src.key, destination=dst.key)
        return snapshot.get(dst)

    async def taint(self, address: AddressInput, workspace: str | None = None) -> StateEntry:
        """Force replacement of a resource on the next plan."""
        return await self._set_tainted(address, workspace, True)

    async def untaint(self, address: AddressInput, workspace: str | None = None) -> StateEntry:
        return await self._set_tainted(address, workspace, False)

    async def _set_tainted(self, address: AddressInput, workspace: str | None, tainted: bool) -> StateEntry:
        ws = workspace or config.DEFAULT_WORKSPACE
        key = self._address(address, ws).key

        def mutate(snapshot: StateSnapshot) -> StateSnapshot:
            entry = snapshot.get(key)
            if entry is None:
                raise ResourceNotFoundError(key)
            return snapshot.with_entry(dataclasses.replace(entry, tainted=tainted))

        snapshot = await self._mutate(ws, "taint" if tainted else "untaint", mutate)
        self._emit("state.taint" if tainted else "state.untaint", ws, address=key)
        return snapshot.get(key)

    async def _mutate(
        self,
        workspace: str,
        operation: str,
        mutate: Callable[[StateSnapshot], StateSnapshot],
    ) -> StateSnapshot:
        self._ensure_workspace(workspace)
        async with self.locks.hold(workspace, self.holder_id, operation, self.lock_timeout):
            snapshot = mutate(self.backend.load(workspace))
            self.backend.save(snapshot)
        logger.info(f"{operation} on '{workspace}' saved at serial {snapshot.serial}")
        return snapshot

    # ------------------------------------------------------------------
    # Locks
    # ------------------------------------------------------------------

    def lock_info(self, workspace: str | None = None) -> Lock | None:
        return self.locks.current(workspace or config.DEFAULT_WORKSPACE)

    def force_unlock(self, workspace: str | None = None, operator: str = "operator") -> Lock | None:
        return self.locks.force_release(workspace or config.DEFAULT_WORKSPACE, operator)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _resolve_graph(self, graph: GraphInput, workspace: str | None) -> ResolvedGraph:
        if isinstance(graph, ResolvedGraph):
            resolved = graph
        elif isinstance(graph, ResourceGraph):
            resolved = graph.resolve()
        else:
            resolved = ResourceGraph.from_dicts(graph, workspace or config.DEFAULT_WORKSPACE).resolve()
        if workspace is not None and resolved.workspace != workspace:
            raise ValueError(f"Graph is for workspace '{resolved.workspace}', not '{workspace}'")
        return resolved

    def _ensure_workspace(self, workspace: str):
        """The default workspace springs into existence on first use; others must be created."""
        if self.backend.has_workspace(workspace):
            return
        if workspace != config.DEFAULT_WORKSPACE:
            raise WorkspaceNotFoundError(workspace)
        try:
            snapshot = self.backend.create_workspace(workspace)
        except WorkspaceExistsError:
            logger.debug(f"Workspace '{workspace}' was created concurrently")
            return
        logger.info(f"Created workspace '{workspace}' on first use")
        self._emit("workspace.created", workspace, lineage_id=snapshot.lineage_id)

    def _load(self, workspace: str) -> StateSnapshot:
        self._ensure_workspace(workspace)
        return self.backend.load(workspace)

    @staticmethod
    def _address(address: AddressInput, workspace: str) -> ResourceAddress:
        if isinstance(address, ResourceAddress):
            return address.in_workspace(workspace)
        return ResourceAddress.parse(address, workspace)

    def _emit(self, type: str, workspace: str, **data: Any):
        self.event_bus.emit_simple(type, workspace, **data)
