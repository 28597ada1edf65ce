"""Executor — runs plan steps as a bounded dataflow and persists state after each one."""

from __future__ import annotations

import asyncio
import dataclasses
import logging
import time
from typing import TYPE_CHECKING, Any

from converge import config
from converge.errors import (
    ConvergeError,
    PartialApplyError,
    ProviderError,
    ReferenceResolutionError,
)
from converge.lifecycle import LifecycleEvaluator
from converge.models import (
    Action,
    Plan,
    PlanStep,
    Ref,
    ResourceNode,
    StateEntry,
    StateSnapshot,
    find_refs,
    resolve_refs,
)
from converge.providers.base import ResourceProvider
from converge.providers.registry import ProviderRegistry

if TYPE_CHECKING:
    from converge.events import EventBus
    from converge.state.base import StateBackend

logger = logging.getLogger(__name__)


class Executor:
    """Applies a plan: a step starts once every step it depends on has succeeded."""

    def __init__(
        self,
        providers: ProviderRegistry,
        backend: StateBackend,
        parallelism: int | None = None,
        event_bus: EventBus | None = None,
        evaluator: LifecycleEvaluator | None = None,
    ):
        self.providers = providers
        self.backend = backend
        self.parallelism = max(1, parallelism or config.MAX_PARALLELISM)
        self.event_bus = event_bus
        self.evaluator = evaluator or LifecycleEvaluator()

    async def apply(
        self,
        plan: Plan,
        snapshot: StateSnapshot,
        cancel: asyncio.Event | None = None,
    ) -> StateSnapshot:
        """Run every step of ``plan`` on top of ``snapshot``. Returns the final snapshot.

        Raises PartialApplyError (carrying the final snapshot) if any step failed or
        was skipped. Nothing is retried.
        """
        self.evaluator.check(plan, snapshot)
        run = _ApplyRun(self, plan, snapshot, cancel or asyncio.Event())
        logger.info(
            f"Applying plan {plan.id} to '{plan.workspace_id}': {len(plan.steps)} steps, "
            f"parallelism={self.parallelism}"
        )
        self._emit("apply.started", plan.workspace_id, plan_id=plan.id, steps=len(plan.steps))
        try:
            await run.execute()
        finally:
            self._emit(
                "apply.finished",
                plan.workspace_id,
                plan_id=plan.id,
                serial=run.state.serial,
                failed=len(run.failed),
                skipped=len(run.skipped),
            )

        if run.failed or run.skipped or run.state_error is not None:
            logger.warning(
                f"Plan {plan.id} incomplete: {len(run.failed)} failed, {len(run.skipped)} skipped"
            )
            raise PartialApplyError(
                run.failed,
                run.skipped,
                state=run.state,
                state_error=run.state_error,
                cancelled=run.cancel.is_set(),
            )
        logger.info(f"Plan {plan.id} applied; '{plan.workspace_id}' now at serial {run.state.serial}")
        return run.state

    def _emit(self, type: str, workspace: str, **data):
        if self.event_bus:
            self.event_bus.emit_simple(type, workspace, **data)


class _ApplyRun:
    """Mutable bookkeeping for one apply."""

    def __init__(self, executor: Executor, plan: Plan, snapshot: StateSnapshot, cancel: asyncio.Event):
        self.executor = executor
        self.plan = plan
        self.state = snapshot
        self.cancel = cancel
        self.failed: list[ConvergeError] = []
        self.skipped: list[dict[str, Any]] = []
        self.state_error: BaseException | None = None
        self._steps = {s.id: s for s in plan.steps}
        self._commit_lock = asyncio.Lock()

    # ------------------------------------------------------------------
    # Scheduling
    # ------------------------------------------------------------------

    async def execute(self):
        for step in self.plan.steps:
            step.status = "pending"
            step.error = None

        running: dict[asyncio.Task, PlanStep] = {}
        try:
            while True:
                self._launch_ready(running)
                if not running:
                    break
                done, _ = await asyncio.wait(running, return_when=asyncio.FIRST_COMPLETED)
                for task in done:
                    running.pop(task)
                    task.result()
        except asyncio.CancelledError:
            # In-flight calls finish and commit while the caller still holds the lock.
            logger.warning(f"Apply of plan {self.plan.id} cancelled; waiting for {len(running)} running step(s)")
            self.cancel.set()
            await asyncio.gather(*running, return_exceptions=True)
            running.clear()
            self._launch_ready(running)
            raise

        if self._halt_reason() is None:
            await self._sync_records()

    async def _sync_records(self):
        """Rewrite recorded metadata of unchanged resources whose declaration moved on."""
        entries = dict(self.state.entries)
        synced: list[str] = []
        for change in self.plan.changes:
            if change.action != Action.NOOP or change.after is None:
                continue
            key = change.address.key
            entry = entries.get(key)
            if entry is None:
                continue
            node = change.after
            updated = dataclasses.replace(
                entry,
                depends_on=set(node.depends_on) | node.references(),
                lifecycle=node.lifecycle,
                provider_ref=node.provider_ref,
                configured_keys=frozenset(node.desired_attributes),
            )
            if updated != entry:
                entries[key] = updated
                synced.append(key)
        if not synced:
            return

        async with self._commit_lock:
            new_state = self.state.evolve(entries=entries)
            try:
                await asyncio.to_thread(self.executor.backend.save, new_state)
            except Exception as e:
                logger.error(f"State write for unchanged resources failed: {e}", exc_info=True)
                self.state_error = e
                return
            self.state = new_state
        logger.info(f"Recorded new dependencies/lifecycle for {', '.join(synced)}")
        self.executor._emit("state.saved", self.plan.workspace_id, serial=new_state.serial, synced=synced)

    def _launch_ready(self, running: dict[asyncio.Task, PlanStep]):
        halted = self._halt_reason()
        # plan.steps is topologically ordered, so one pass propagates skips transitively.
        for step in self.plan.steps:
            if step.status != "pending":
                continue
            if halted:
                self._skip(step, halted)
                continue
            blocked = [d for d in step.depends_on if self._steps[d].status in ("failed", "skipped")]
            if blocked:
                self._skip(step, f"dependency {sorted(blocked)[0]} did not succeed")
                continue
            if any(self._steps[d].status != "succeeded" for d in step.depends_on):
                continue
            if len(running) >= self.executor.parallelism:
                continue
            step.status = "running"
            running[asyncio.create_task(self._run_step(step))] = step

    def _halt_reason(self) -> str | None:
        if self.state_error is not None:
            return "state write failed"
        if self.cancel.is_set():
            return "cancelled"
        return None

    def _skip(self, step: PlanStep, reason: str):
        step.status = "skipped"
        step.error = reason
        self.skipped.append({"step": step.id, "address": step.address.key, "reason": reason})
        logger.info(f"Skipping {step.id}: {reason}")
        self.executor._emit("step.skipped", self.plan.workspace_id, step=step.id, reason=reason)

    # ------------------------------------------------------------------
    # One step
    # ------------------------------------------------------------------

    async def _run_step(self, step: PlanStep):
        workspace = self.plan.workspace_id
        self.executor._emit("step.started", workspace, step=step.id)
        logger.info(f"Starting {step.id}")
        try:
            provider = self._provider_for(step)
            entry = await self._call(step, provider)
        except ConvergeError as e:
            self._fail(step, e)
            return
        except Exception as e:
            logger.error(f"{step.id} failed: {e}", exc_info=True)
            self._fail(step, ProviderError(step.address, step.operation, e))
            return

        try:
            await self._commit(step, entry, provider)
        except Exception as e:
            logger.error(f"State write after {step.id} failed: {e}", exc_info=True)
            self.state_error = e
            step.status = "failed"
            step.error = f"state write failed: {e}"
            self.executor._emit("step.failed", workspace, step=step.id, error=step.error)
            return

        step.status = "succeeded"
        logger.info(f"Finished {step.id}")
        self.executor._emit("step.succeeded", workspace, step=step.id, serial=self.state.serial)

    def _fail(self, step: PlanStep, error: ConvergeError):
        step.status = "failed"
        step.error = str(error)
        self.failed.append(error)
        logger.warning(f"{step.id} failed: {error}")
        self.executor._emit("step.failed", self.plan.workspace_id, step=step.id, error=error.to_dict())

    def _provider_for(self, step: PlanStep) -> ResourceProvider:
        change = step.change
        source = change.after if change.after is not None else change.before
        return self.executor.providers.for_address(change.address, source.provider_ref)

    async def _call(self, step: PlanStep, provider: ResourceProvider) -> StateEntry | None:
        change = step.change
        if step.operation == "destroy":
            await provider.destroy(change.before)
            return None
        node = self._resolved(change.after)
        if step.operation == "create":
            return await provider.create(node)
        return await provider.update(change.before, node)

    def _resolved(self, node: ResourceNode) -> ResourceNode:
        """Fill references from the live snapshot; every dependency has applied by now."""

        def lookup(ref: Ref) -> Any:
            entry = self.state.get(ref.address.key)
            if entry is None:
                raise KeyError(str(ref))
            return ref.attribute.get(entry.applied_attributes)

        attributes = resolve_refs(node.desired_attributes, lookup)
        unresolved = find_refs(attributes)
        if unresolved:
            raise ReferenceResolutionError(node.address, str(unresolved[0]))
        return node.with_attributes(attributes)

    async def _commit(self, step: PlanStep, result: StateEntry | None, provider: ResourceProvider):
        change = step.change
        key = change.address.key
        async with self._commit_lock:
            entries = dict(self.state.entries)
            deposed = dict(self.state.deposed)
            if step.operation == "destroy":
                if change.deposed or change.is_create_before_destroy:
                    deposed.pop(key, None)
                else:
                    entries.pop(key, None)
            else:
                if change.is_create_before_destroy and key in entries:
                    # Old and new instance change hands in the same write.
                    deposed[key] = entries[key]
                entries[key] = self._stamp(result, change.after, provider)

            new_state = self.state.evolve(entries=entries, deposed=deposed)
            await asyncio.to_thread(self.executor.backend.save, new_state)
            self.state = new_state
        self.executor._emit("state.saved", self.plan.workspace_id, serial=new_state.serial, step=step.id)

    @staticmethod
    def _stamp(result: StateEntry, node: ResourceNode, provider: ResourceProvider) -> StateEntry:
        return dataclasses.replace(
            result,
            address=node.address,
            depends_on=set(node.depends_on) | node.references(),
            provider_ref=node.provider_ref,
            lifecycle=node.lifecycle,
            schema_version=provider.schema_version,
            last_applied_at=time.time(),
            tainted=False,
            configured_keys=frozenset(node.desired_attributes),
        )
