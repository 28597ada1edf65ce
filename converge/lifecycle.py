"""Lifecycle policy evaluator — prevent_destroy, ignore_changes and replacement ordering.

Turns the planner's logical change set into executable steps:

    create / update        one step
    replace                destroy -> create, or create -> destroy(deposed)
                           when create_before_destroy is set
    destroy                one step (deposed objects get their own step id)

and orders them in a single merged sequence that respects both the forward
(create/update) and reverse (destroy) dependency edges.
"""

from __future__ import annotations

import copy
import logging
from typing import Any

from converge.errors import DestroyPreventedError, PlanOrderingConflictError, StaleSnapshotError
from converge.graph import OrderingCycle, topological_order
from converge.models import (
    Action,
    Change,
    Plan,
    PlanStep,
    ResourceAddress,
    ResourceNode,
    StateEntry,
    StateSnapshot,
    step_id,
)

logger = logging.getLogger(__name__)

_ABSENT = object()

# Tie-break among steps of the same change
_OP_RANK = {"destroy": 0, "create": 1, "update": 1}


def effective_attributes(node: ResourceNode, entry: StateEntry) -> dict[str, Any]:
    """Desired attributes with every ignored path pinned to its prior applied value."""
    policy = node.lifecycle
    desired = node.desired_attributes
    prior = entry.applied_attributes
    if policy.ignore_all_changes:
        return {k: copy.deepcopy(prior[k]) for k in desired if k in prior}

    out = desired
    for path in sorted(policy.ignore_changes, key=str):
        value = path.get(prior, _ABSENT)
        if value is _ABSENT:
            out = path.remove(out)
        else:
            out = path.assign(out, copy.deepcopy(value))
    return out


def desired_dependencies(change: Change) -> set[ResourceAddress]:
    if change.after is None:
        return set()
    return set(change.after.depends_on) | change.after.references()


class LifecycleEvaluator:
    """Applies lifecycle policies to a raw plan and emits its ordered steps."""

    def evaluate(self, plan: Plan) -> Plan:
        self.enforce_prevent_destroy(plan)
        steps = self._expand(plan)
        plan.steps = self._order(plan, steps)
        plan.changes = self._merged_changes(plan)
        logger.debug(f"Plan {plan.id} steps: {[s.id for s in plan.steps]}")
        return plan

    def enforce_prevent_destroy(self, plan: Plan):
        for change in plan.changes:
            if change.action in (Action.DESTROY, Action.REPLACE) and change.lifecycle.prevent_destroy:
                logger.info(f"Refusing plan {plan.id}: {change.address} is protected by prevent_destroy")
                raise DestroyPreventedError(change.address)

    def check(self, plan: Plan, snapshot: StateSnapshot):
        """Re-validate a plan against the snapshot it is about to run on."""
        if plan.workspace_id != snapshot.workspace_id:
            raise StaleSnapshotError(
                snapshot.workspace_id, f"plan was made for workspace '{plan.workspace_id}'"
            )
        if plan.lineage_id != snapshot.lineage_id:
            raise StaleSnapshotError(
                snapshot.workspace_id,
                f"plan lineage {plan.lineage_id} does not match state lineage {snapshot.lineage_id}",
            )
        if plan.prior_serial != snapshot.serial:
            raise StaleSnapshotError(
                snapshot.workspace_id,
                f"plan was made at serial {plan.prior_serial}, state is now at {snapshot.serial}",
            )
        self.enforce_prevent_destroy(plan)

    # ------------------------------------------------------------------
    # Step expansion
    # ------------------------------------------------------------------

    def _expand(self, plan: Plan) -> dict[str, PlanStep]:
        steps: dict[str, PlanStep] = {}
        # key -> step that makes the new version present (create or update)
        apply_step: dict[str, PlanStep] = {}
        # key -> steps that remove an old instance (regular and deposed)
        removal_steps: dict[str, list[tuple[PlanStep, StateEntry]]] = {}
        by_key = {c.address.key: c for c in plan.changes if not c.deposed}
        cbd_destroy: dict[str, PlanStep] = {}

        def add(operation: str, change: Change, deposed: bool = False) -> PlanStep:
            step = PlanStep(id=step_id(operation, change.address, deposed), operation=operation, change=change)
            steps[step.id] = step
            return step

        for change in plan.changes:
            key = change.address.key
            if change.action == Action.CREATE:
                apply_step[key] = add("create", change)
            elif change.action == Action.UPDATE:
                apply_step[key] = add("update", change)
            elif change.action == Action.DESTROY:
                step = add("destroy", change, deposed=change.deposed)
                removal_steps.setdefault(key, []).append((step, change.before))
            elif change.action == Action.REPLACE:
                if change.lifecycle.create_before_destroy:
                    create = add("create", change)
                    destroy = add("destroy", change)
                    destroy.depends_on.add(create.id)
                    cbd_destroy[key] = destroy
                else:
                    destroy = add("destroy", change)
                    create = add("create", change)
                    create.depends_on.add(destroy.id)
                apply_step[key] = create
                removal_steps.setdefault(key, []).append((destroy, change.before))

        # Forward edges: a new version waits for the new versions of what it uses.
        for key, step in apply_step.items():
            for dep in self._applied_dependencies(by_key[key], by_key, apply_step):
                step.depends_on.add(apply_step[dep].id)

        # Reverse edges: an old instance goes before the old instances it used.
        for key, removals in removal_steps.items():
            for step, entry in removals:
                for dep in entry.depends_on:
                    for dep_step, _ in removal_steps.get(dep.key, []):
                        dep_step.depends_on.add(step.id)
                    # An orphan must be gone before its former dependency changes in place.
                    dep_apply = apply_step.get(dep.key)
                    if step.change.action == Action.DESTROY and dep_apply and dep_apply.operation == "update":
                        dep_apply.depends_on.add(step.id)

        # The deposed half of create_before_destroy outlives every dependent's new version.
        for key, change in by_key.items():
            if key not in apply_step:
                continue
            for dep in desired_dependencies(change):
                dep_change = by_key.get(dep.key)
                if dep_change is None or not dep_change.is_create_before_destroy:
                    continue
                cbd_destroy[dep.key].depends_on.add(apply_step[key].id)

        # Only one deposed object per address: clear a leftover before deposing again.
        for key, destroy in cbd_destroy.items():
            leftover = steps.get(step_id("destroy", destroy.address, deposed=True))
            if leftover is not None:
                apply_step[key].depends_on.add(leftover.id)

        return steps

    @staticmethod
    def _applied_dependencies(
        change: Change,
        by_key: dict[str, Change],
        apply_step: dict[str, PlanStep],
    ) -> set[str]:
        """Keys of the nearest dependencies that have a create/update step, walking through no-ops."""
        found: set[str] = set()
        seen: set[str] = set()
        stack = list(desired_dependencies(change))
        while stack:
            dep = stack.pop()
            if dep.key in seen:
                continue
            seen.add(dep.key)
            if dep.key in apply_step:
                found.add(dep.key)
            elif dep.key in by_key:
                stack.extend(desired_dependencies(by_key[dep.key]))
        return found

    # ------------------------------------------------------------------
    # Ordering
    # ------------------------------------------------------------------

    def _order(self, plan: Plan, steps: dict[str, PlanStep]) -> list[PlanStep]:
        rank = {id(c): i for i, c in enumerate(plan.changes)}
        try:
            order = topological_order(
                {sid: s.depends_on for sid, s in steps.items()},
                key=lambda sid: (rank[id(steps[sid].change)], _OP_RANK[steps[sid].operation], sid),
            )
        except OrderingCycle as e:
            logger.info(f"Plan {plan.id} has no valid step order: {' -> '.join(e.cycle)}")
            raise PlanOrderingConflictError(e.cycle) from None
        return [steps[sid] for sid in order]

    @staticmethod
    def _merged_changes(plan: Plan) -> list[Change]:
        ordered: list[Change] = []
        placed: set[int] = set()
        for step in plan.steps:
            if id(step.change) not in placed:
                placed.add(id(step.change))
                ordered.append(step.change)
        ordered.extend(c for c in plan.changes if id(c) not in placed)
        return ordered
