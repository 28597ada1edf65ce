"""Differ / planner — compares the desired graph against recorded state."""

from __future__ import annotations

import dataclasses
import logging
from collections.abc import Iterable
from typing import Any

from converge.graph import ResolvedGraph
from converge.lifecycle import LifecycleEvaluator, effective_attributes
from converge.models import (
    Action,
    Change,
    Plan,
    Ref,
    ResourceAddress,
    ResourceNode,
    StateEntry,
    StateSnapshot,
    diff_paths,
    resolve_refs,
)
from converge.providers.registry import ProviderRegistry

logger = logging.getLogger(__name__)


def _key(address: ResourceAddress | str) -> str:
    return address if isinstance(address, str) else address.key


class Planner:
    """Builds a Plan: one Change per address, then hands it to the lifecycle evaluator for steps."""

    def __init__(self, providers: ProviderRegistry, evaluator: LifecycleEvaluator | None = None):
        self.providers = providers
        self.evaluator = evaluator or LifecycleEvaluator()

    async def plan(
        self,
        graph: ResolvedGraph,
        snapshot: StateSnapshot,
        *,
        destroy: bool = False,
        targets: Iterable[ResourceAddress | str] | None = None,
        replace: Iterable[ResourceAddress | str] | None = None,
    ) -> Plan:
        replace_keys = {_key(a) for a in replace or ()}
        changes: dict[str, Change] = {}

        for node in graph:
            key = node.address.key
            entry = snapshot.get(key)
            if destroy:
                if entry is not None:
                    # The declared edges are current; the recorded ones may predate them.
                    current = dataclasses.replace(entry, depends_on=set(node.depends_on) | node.references())
                    changes[key] = Change(
                        address=entry.address,
                        action=Action.DESTROY,
                        before=current,
                        lifecycle=node.lifecycle,
                        reason="destroy requested",
                    )
                continue
            changes[key] = await self._diff_node(node, entry, changes, replace_keys)

        for key, entry in sorted(snapshot.entries.items()):
            if key in graph:
                continue
            changes[key] = Change(
                address=entry.address,
                action=Action.DESTROY,
                before=entry,
                lifecycle=entry.lifecycle,
                reason="destroy requested" if destroy else "not in configuration",
            )

        deposed = [
            Change(
                address=entry.address,
                action=Action.DESTROY,
                before=entry,
                lifecycle=entry.lifecycle,
                reason="deposed object",
                deposed=True,
            )
            for _, entry in sorted(snapshot.deposed.items())
        ]

        if targets is not None:
            keep = self._target_closure(graph, snapshot, targets, destroy)
            changes = {k: c for k, c in changes.items() if k in keep}
            deposed = [c for c in deposed if c.address.key in keep]

        plan = Plan(
            workspace_id=snapshot.workspace_id,
            lineage_id=snapshot.lineage_id,
            prior_serial=snapshot.serial,
            changes=list(changes.values()) + deposed,
            destroy_mode=destroy,
        )
        plan = self.evaluator.evaluate(plan)
        logger.info(f"Plan {plan.id} for '{plan.workspace_id}' at serial {plan.prior_serial}: {plan.summary()}")
        return plan

    # ------------------------------------------------------------------
    # Per-node diff
    # ------------------------------------------------------------------

    async def _diff_node(
        self,
        node: ResourceNode,
        entry: StateEntry | None,
        planned: dict[str, Change],
        replace_keys: set[str],
    ) -> Change:
        # Keep reference targets as explicit edges; resolution erases them from the attributes.
        resolved = dataclasses.replace(
            node,
            desired_attributes=self._resolve_known(node.desired_attributes, planned),
            depends_on=set(node.depends_on) | node.references(),
        )
        if entry is None:
            return Change(
                address=node.address,
                action=Action.CREATE,
                after=resolved,
                lifecycle=node.lifecycle,
                reason="not in state",
            )

        key = node.address.key
        if key in replace_keys or entry.tainted:
            return Change(
                address=node.address,
                action=Action.REPLACE,
                before=entry,
                after=resolved,
                lifecycle=node.lifecycle,
                reason="tainted" if entry.tainted else "replacement requested",
            )

        effective = resolved.with_attributes(effective_attributes(resolved, entry))
        configured = () if node.lifecycle.ignore_all_changes else entry.configured_keys
        paths = diff_paths(effective.desired_attributes, entry.applied_attributes, configured)
        if not paths:
            return Change(
                address=node.address,
                action=Action.NOOP,
                before=entry,
                after=effective,
                lifecycle=node.lifecycle,
            )

        provider = self.providers.for_node(node)
        if await provider.diff(entry, effective):
            return Change(
                address=node.address,
                action=Action.REPLACE,
                before=entry,
                after=resolved,
                lifecycle=node.lifecycle,
                changed_paths=paths,
                reason="forces replacement",
            )
        return Change(
            address=node.address,
            action=Action.UPDATE,
            before=entry,
            after=effective,
            lifecycle=node.lifecycle,
            changed_paths=paths,
            reason="update in-place",
        )

    @staticmethod
    def _resolve_known(value: Any, planned: dict[str, Change]) -> Any:
        """Resolve references whose target stays untouched; everything else remains unknown."""

        def lookup(ref: Ref) -> Any:
            change = planned.get(ref.address.key)
            if change is None or change.action != Action.NOOP or change.before is None:
                raise KeyError(str(ref))
            return ref.attribute.get(change.before.applied_attributes)

        return resolve_refs(value, lookup)

    # ------------------------------------------------------------------
    # Targeting
    # ------------------------------------------------------------------

    @staticmethod
    def _target_closure(
        graph: ResolvedGraph,
        snapshot: StateSnapshot,
        targets: Iterable[ResourceAddress | str],
        destroy: bool,
    ) -> set[str]:
        recorded_dependents: dict[str, set[str]] = {}
        for key, entry in snapshot.entries.items():
            for dep in entry.depends_on:
                recorded_dependents.setdefault(dep.key, set()).add(key)

        keep: set[str] = set()
        for target in targets:
            key = _key(target)
            keep.add(key)
            node = graph.get(key)
            if node is not None and not destroy:
                keep.update(a.key for a in graph.ancestors(node.address))
                continue
            # Destroying something means destroying what still uses it first.
            stack = [key]
            if node is not None:
                stack.extend(a.key for a in graph.descendants(node.address))
            while stack:
                current = stack.pop()
                keep.add(current)
                stack.extend(recorded_dependents.get(current, set()) - keep)
        return keep
