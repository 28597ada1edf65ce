"""Test the executor: dataflow scheduling, failure isolation, state persistence."""

import asyncio

import pytest

from converge.errors import PartialApplyError, ProviderError, StaleSnapshotError
from converge.events import EventBus
from converge.executor import Executor
from converge.graph import ResourceGraph
from converge.models import AttributePath, LifecyclePolicy, Ref, ResourceAddress, ResourceNode
from converge.planner import Planner
from converge.providers import InMemoryProvider, ProviderRegistry
from converge.state import MemoryBackend


def addr(key: str) -> ResourceAddress:
    return ResourceAddress.parse(key)


def node(key, depends_on=(), lifecycle=None, **attributes) -> ResourceNode:
    return ResourceNode(
        address=addr(key),
        desired_attributes=attributes,
        depends_on={addr(d) for d in depends_on},
        lifecycle=lifecycle or LifecyclePolicy(),
    )


class RecordingBackend(MemoryBackend):
    """Keeps every snapshot it accepted; can be told to fail the n-th save."""

    def __init__(self, fail_on_save: int | None = None):
        super().__init__()
        self.saved = []
        self.fail_on_save = fail_on_save

    def save(self, snapshot):
        if self.fail_on_save is not None and len(self.saved) + 1 == self.fail_on_save:
            raise OSError("disk full")
        super().save(snapshot)
        self.saved.append(snapshot)


class Harness:
    def __init__(self, backend=None, parallelism=10, **provider_kwargs):
        self.provider = InMemoryProvider(**provider_kwargs)
        self.registry = ProviderRegistry()
        self.registry.register("memory", self.provider)
        self.backend = backend or RecordingBackend()
        self.backend.create_workspace("default")
        self.bus = EventBus()
        self.planner = Planner(self.registry)
        self.executor = Executor(self.registry, self.backend, parallelism=parallelism, event_bus=self.bus)

    def run(self, nodes, cancel=None, **plan_kwargs):
        async def go():
            snapshot = self.backend.load("default")
            plan = await self.planner.plan(ResourceGraph(nodes).resolve(), snapshot, **plan_kwargs)
            return plan, await self.executor.apply(plan, snapshot, cancel)

        return asyncio.run(go())


def test_apply_creates_in_order_and_persists():
    h = Harness()
    plan, state = h.run([node("memory_b.b", depends_on=["memory_a.a"], size=2), node("memory_a.a", size=1)])

    assert h.provider.operations() == ["create memory_a.a", "create memory_b.b"]
    assert state.serial == 2
    assert h.backend.load("default").serial == 2
    b = state.get("memory_b.b")
    assert b.applied_attributes["size"] == 2
    assert b.depends_on == {addr("memory_a.a")}
    assert all(s.status == "succeeded" for s in plan.steps)


def test_apply_then_replan_converges():
    h = Harness()
    nodes = [node("memory_a.a", size=1), node("memory_b.b", net=Ref(addr("memory_a.a"), AttributePath.parse("id")))]
    h.run(nodes)
    plan, _ = h.run(nodes)
    assert not plan.has_changes


def test_references_resolved_from_applied_state():
    h = Harness()
    _, state = h.run(
        [node("memory_net.main"), node("memory_vm.web", net=Ref(addr("memory_net.main"), AttributePath.parse("id")))]
    )
    net_id = state.get("memory_net.main").provider_id
    assert state.get("memory_vm.web").applied_attributes["net"] == net_id
    assert state.get("memory_vm.web").depends_on == {addr("memory_net.main")}


def test_failure_skips_dependents_only():
    h = Harness()
    h.provider.fail_on("create", "memory_a.a")
    with pytest.raises(PartialApplyError) as exc:
        h.run([node("memory_a.a"), node("memory_b.b", depends_on=["memory_a.a"]), node("memory_c.c")])

    err = exc.value
    assert len(err.failed) == 1
    assert isinstance(err.failed[0], ProviderError)
    assert err.failed[0].address == addr("memory_a.a")
    assert [s["step"] for s in err.skipped] == ["create:memory_b.b"]
    assert err.state.get("memory_c.c") is not None
    assert err.state.get("memory_a.a") is None
    assert h.backend.load("default").serial == err.state.serial
    assert "create memory_b.b" not in h.provider.operations()


def test_failure_is_not_retried():
    h = Harness()
    h.provider.fail_on("create", "memory_a.a")
    with pytest.raises(PartialApplyError):
        h.run([node("memory_a.a")])
    assert h.provider.operations() == ["create memory_a.a"]


def test_parallelism_is_bounded():
    h = Harness(parallelism=2, delay=0.02)
    h.run([node(f"memory_file.f{i}") for i in range(6)])
    assert h.provider.max_in_flight == 2


def test_independent_steps_run_concurrently():
    h = Harness(parallelism=10, delay=0.02)
    h.run([node(f"memory_file.f{i}") for i in range(4)])
    assert h.provider.max_in_flight == 4


def test_cancel_before_start_skips_everything():
    h = Harness()
    cancel = asyncio.Event()
    cancel.set()
    with pytest.raises(PartialApplyError) as exc:
        h.run([node("memory_a.a"), node("memory_b.b")], cancel=cancel)
    assert exc.value.cancelled
    assert {s["reason"] for s in exc.value.skipped} == {"cancelled"}
    assert h.provider.calls == []


def test_create_before_destroy_keeps_an_instance_in_every_snapshot():
    h = Harness(force_new={"name"})
    cbd = LifecyclePolicy(create_before_destroy=True)
    _, first = h.run([node("memory_net.main", lifecycle=cbd, name="old")])
    old_id = first.get("memory_net.main").provider_id

    plan, final = h.run([node("memory_net.main", lifecycle=cbd, name="new")])
    assert [s.id for s in plan.steps] == ["create:memory_net.main", "destroy:memory_net.main"]

    for snapshot in h.backend.saved:
        assert snapshot.get("memory_net.main") is not None or "memory_net.main" in snapshot.deposed

    middle = h.backend.saved[-2]
    assert middle.deposed["memory_net.main"].provider_id == old_id
    assert middle.get("memory_net.main").provider_id != old_id
    assert final.deposed == {}
    assert old_id not in h.provider.resources
    assert final.get("memory_net.main").applied_attributes["name"] == "new"


def test_failed_cbd_destroy_leaves_deposed_for_next_plan():
    h = Harness(force_new={"name"})
    cbd = LifecyclePolicy(create_before_destroy=True)
    h.run([node("memory_net.main", lifecycle=cbd, name="old")])
    h.provider.fail_on("destroy", "memory_net.main")
    with pytest.raises(PartialApplyError) as exc:
        h.run([node("memory_net.main", lifecycle=cbd, name="new")])
    assert "memory_net.main" in exc.value.state.deposed

    plan, state = h.run([node("memory_net.main", lifecycle=cbd, name="new")])
    assert [s.id for s in plan.steps] == ["destroy:memory_net.main:deposed"]
    assert state.deposed == {}


def test_state_write_failure_halts():
    h = Harness(backend=RecordingBackend(fail_on_save=2), parallelism=1)
    with pytest.raises(PartialApplyError) as exc:
        h.run([node("memory_a.a"), node("memory_b.b", depends_on=["memory_a.a"]), node("memory_c.c", depends_on=["memory_b.b"])])
    err = exc.value
    assert isinstance(err.state_error, OSError)
    assert err.state.serial == 1
    assert [s["step"] for s in err.skipped] == ["create:memory_c.c"]
    assert h.backend.load("default").serial == 1


def test_stale_plan_never_touches_providers():
    h = Harness()

    async def go():
        snapshot = h.backend.load("default")
        plan = await h.planner.plan(ResourceGraph([node("memory_a.a")]).resolve(), snapshot)
        h.backend.save(snapshot.evolve())
        with pytest.raises(StaleSnapshotError):
            await h.executor.apply(plan, h.backend.load("default"))

    asyncio.run(go())
    assert h.provider.calls == []


def test_events_emitted():
    h = Harness()
    h.run([node("memory_a.a")])
    types = [e.type for e in h.bus.recent()]
    assert types[0] == "apply.started"
    assert types[-1] == "apply.finished"
    assert "step.succeeded" in types
    assert "state.saved" in types


def test_cancel_mid_flight_finishes_running_step():
    h = Harness(parallelism=1, delay=0.05)
    cancel = asyncio.Event()

    async def go():
        snapshot = h.backend.load("default")
        graph = ResourceGraph([node("memory_a.a"), node("memory_b.b", depends_on=["memory_a.a"])]).resolve()
        plan = await h.planner.plan(graph, snapshot)

        async def trip():
            await asyncio.sleep(0.02)
            cancel.set()

        trip_task = asyncio.create_task(trip())
        try:
            await h.executor.apply(plan, snapshot, cancel)
        finally:
            await trip_task

    with pytest.raises(PartialApplyError) as exc:
        asyncio.run(go())
    err = exc.value
    assert err.cancelled
    assert err.failed == []
    assert err.skipped == [{"step": "create:memory_b.b", "address": "memory_b.b", "reason": "cancelled"}]
    assert err.state.get("memory_a.a") is not None
    assert h.backend.load("default").serial == 1
    assert h.provider.operations() == ["create memory_a.a"]


def test_cancelled_task_waits_for_running_steps():
    h = Harness(parallelism=2, delay=0.05)

    async def go():
        snapshot = h.backend.load("default")
        graph = ResourceGraph([node("memory_a.a"), node("memory_b.b", depends_on=["memory_a.a"])]).resolve()
        plan = await h.planner.plan(graph, snapshot)
        task = asyncio.create_task(h.executor.apply(plan, snapshot))
        await asyncio.sleep(0.02)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
        # Nothing is still running once the cancelled apply has returned.
        return h.backend.load("default").serial, h.provider.in_flight, plan

    serial, in_flight, plan = asyncio.run(go())
    assert serial == 1
    assert in_flight == 0
    assert [s.status for s in plan.steps] == ["succeeded", "skipped"]
    assert h.backend.load("default").serial == 1
