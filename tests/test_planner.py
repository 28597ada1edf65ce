"""Test the differ / planner."""

import asyncio
import dataclasses

import pytest

from converge.errors import ProviderNotFoundError
from converge.graph import ResourceGraph
from converge.models import (
    Action,
    AttributePath,
    LifecyclePolicy,
    Ref,
    ResourceAddress,
    ResourceNode,
    StateEntry,
    StateSnapshot,
)
from converge.planner import Planner
from converge.providers import InMemoryProvider, ProviderRegistry


def addr(key: str) -> ResourceAddress:
    return ResourceAddress.parse(key)


def ref(key: str, attribute: str = "id") -> Ref:
    return Ref(addr(key), AttributePath.parse(attribute))


def node(key, depends_on=(), lifecycle=None, **attributes) -> ResourceNode:
    return ResourceNode(
        address=addr(key),
        desired_attributes=attributes,
        depends_on={addr(d) for d in depends_on},
        lifecycle=lifecycle or LifecyclePolicy(),
    )


def entry(key, depends_on=(), lifecycle=None, tainted=False, **attributes) -> StateEntry:
    return StateEntry(
        address=addr(key),
        applied_attributes={**attributes, "id": f"id-{key}"},
        provider_id=f"id-{key}",
        depends_on={addr(d) for d in depends_on},
        lifecycle=lifecycle or LifecyclePolicy(),
        tainted=tainted,
    )


def snapshot(*entries) -> StateSnapshot:
    return StateSnapshot(workspace_id="default", serial=3, entries={e.address.key: e for e in entries})


@pytest.fixture
def planner():
    registry = ProviderRegistry()
    registry.register("memory", InMemoryProvider(force_new={"name"}))
    return Planner(registry)


def make_plan(planner, nodes, snap, **kwargs):
    return asyncio.run(planner.plan(ResourceGraph(nodes).resolve(), snap, **kwargs))


def test_create_in_dependency_order(planner):
    plan = make_plan(
        planner,
        [node("memory_b.b", depends_on=["memory_a.a"]), node("memory_a.a")],
        snapshot(),
    )
    assert plan.actions() == [("create", "memory_a.a"), ("create", "memory_b.b")]
    assert [s.id for s in plan.steps] == ["create:memory_a.a", "create:memory_b.b"]
    assert plan.steps[1].depends_on == {"create:memory_a.a"}
    assert plan.prior_serial == 3


def test_orphans_destroyed_in_reverse_order(planner):
    snap = snapshot(entry("memory_a.a"), entry("memory_b.b", depends_on=["memory_a.a"]))
    plan = make_plan(planner, [], snap)
    assert plan.actions() == [("destroy", "memory_b.b"), ("destroy", "memory_a.a")]
    assert all(c.reason == "not in configuration" for c in plan.changes)


def test_identical_graph_is_all_noop(planner):
    snap = snapshot(entry("memory_a.a", size=1), entry("memory_b.b", depends_on=["memory_a.a"], size=2))
    plan = make_plan(
        planner,
        [node("memory_a.a", size=1), node("memory_b.b", depends_on=["memory_a.a"], size=2)],
        snap,
    )
    assert not plan.has_changes
    assert plan.steps == []
    assert plan.summary()["no-op"] == 2


def test_update_in_place(planner):
    snap = snapshot(entry("memory_a.a", name="a", size=1))
    plan = make_plan(planner, [node("memory_a.a", name="a", size=2)], snap)
    change = plan.change_for("memory_a.a")
    assert change.action == Action.UPDATE
    assert [str(p) for p in change.changed_paths] == ["size"]
    assert [s.id for s in plan.steps] == ["update:memory_a.a"]


def test_force_new_attribute_replaces(planner):
    snap = snapshot(entry("memory_a.a", name="old"))
    plan = make_plan(planner, [node("memory_a.a", name="new")], snap)
    change = plan.change_for("memory_a.a")
    assert change.action == Action.REPLACE
    assert change.reason == "forces replacement"
    assert [s.id for s in plan.steps] == ["destroy:memory_a.a", "create:memory_a.a"]


def test_type_strict_comparison(planner):
    snap = snapshot(entry("memory_a.a", port="80", enabled=1))
    plan = make_plan(planner, [node("memory_a.a", port=80, enabled=True)], snap)
    change = plan.change_for("memory_a.a")
    assert change.action == Action.UPDATE
    assert sorted(str(p) for p in change.changed_paths) == ["enabled", "port"]


def test_computed_attributes_are_not_drift(planner):
    # "id" only exists in state; it is never part of the comparison.
    snap = snapshot(entry("memory_a.a", size=1))
    plan = make_plan(planner, [node("memory_a.a", size=1)], snap)
    assert plan.change_for("memory_a.a").action == Action.NOOP


def test_reference_to_unchanged_resource_is_known(planner):
    snap = snapshot(
        entry("memory_net.main", cidr="10.0.0.0/16"),
        entry("memory_vm.web", depends_on=["memory_net.main"], net="id-memory_net.main"),
    )
    plan = make_plan(
        planner,
        [node("memory_net.main", cidr="10.0.0.0/16"), node("memory_vm.web", net=ref("memory_net.main"))],
        snap,
    )
    assert not plan.has_changes
    assert plan.change_for("memory_vm.web").after.desired_attributes == {"net": "id-memory_net.main"}


def test_reference_to_changing_resource_forces_update(planner):
    snap = snapshot(
        entry("memory_net.main", cidr="10.0.0.0/16"),
        entry("memory_vm.web", depends_on=["memory_net.main"], net="id-memory_net.main"),
    )
    plan = make_plan(
        planner,
        [node("memory_net.main", cidr="10.1.0.0/16"), node("memory_vm.web", net=ref("memory_net.main"))],
        snap,
    )
    web = plan.change_for("memory_vm.web")
    assert web.action == Action.UPDATE
    assert isinstance(web.after.desired_attributes["net"], Ref)
    assert plan.actions() == [("update", "memory_net.main"), ("update", "memory_vm.web")]


def test_reference_to_new_resource_is_unknown(planner):
    plan = make_plan(
        planner,
        [node("memory_net.main"), node("memory_vm.web", net=ref("memory_net.main"))],
        snapshot(),
    )
    web = plan.change_for("memory_vm.web")
    assert web.action == Action.CREATE
    assert isinstance(web.after.desired_attributes["net"], Ref)
    assert addr("memory_net.main") in web.after.depends_on


def test_tainted_entry_is_replaced(planner):
    snap = snapshot(entry("memory_a.a", size=1, tainted=True))
    plan = make_plan(planner, [node("memory_a.a", size=1)], snap)
    change = plan.change_for("memory_a.a")
    assert change.action == Action.REPLACE
    assert change.reason == "tainted"


def test_replace_option(planner):
    snap = snapshot(entry("memory_a.a", size=1))
    plan = make_plan(planner, [node("memory_a.a", size=1)], snap, replace=["memory_a.a"])
    assert plan.change_for("memory_a.a").action == Action.REPLACE


def test_destroy_mode(planner):
    snap = snapshot(entry("memory_a.a"), entry("memory_b.b", depends_on=["memory_a.a"]))
    plan = make_plan(
        planner,
        [node("memory_a.a"), node("memory_b.b", depends_on=["memory_a.a"])],
        snap,
        destroy=True,
    )
    assert plan.destroy_mode
    assert plan.actions() == [("destroy", "memory_b.b"), ("destroy", "memory_a.a")]


def test_targets_include_dependencies_only(planner):
    plan = make_plan(
        planner,
        [
            node("memory_a.a"),
            node("memory_b.b", depends_on=["memory_a.a"]),
            node("memory_c.c"),
        ],
        snapshot(),
        targets=["memory_b.b"],
    )
    assert plan.actions() == [("create", "memory_a.a"), ("create", "memory_b.b")]


def test_destroy_target_includes_dependents(planner):
    snap = snapshot(
        entry("memory_a.a"),
        entry("memory_b.b", depends_on=["memory_a.a"]),
        entry("memory_c.c"),
    )
    plan = make_plan(planner, [], snap, destroy=True, targets=["memory_a.a"])
    assert plan.actions() == [("destroy", "memory_b.b"), ("destroy", "memory_a.a")]


def test_deposed_objects_are_destroyed(planner):
    leftover = entry("memory_a.a", size=1)
    snap = StateSnapshot(
        workspace_id="default",
        entries={"memory_a.a": entry("memory_a.a", size=1)},
        deposed={"memory_a.a": leftover},
    )
    plan = make_plan(planner, [node("memory_a.a", size=1)], snap)
    assert [s.id for s in plan.steps] == ["destroy:memory_a.a:deposed"]
    assert plan.steps[0].change.deposed


def test_unknown_provider(planner):
    snap = snapshot(entry("other_a.a", size=1))
    with pytest.raises(ProviderNotFoundError):
        make_plan(planner, [node("other_a.a", size=2)], snap)


def test_removed_attribute_is_updated(planner):
    prior = dataclasses.replace(
        entry("memory_a.a", size=1, tags={"env": "prod"}),
        configured_keys=frozenset({"size", "tags"}),
    )
    plan = make_plan(planner, [node("memory_a.a", size=1)], snapshot(prior))
    change = plan.change_for("memory_a.a")
    assert change.action == Action.UPDATE
    assert [str(p) for p in change.changed_paths] == ["tags"]


def test_removed_attribute_under_ignore_all(planner):
    prior = dataclasses.replace(
        entry("memory_a.a", size=1, tags={"env": "prod"}),
        configured_keys=frozenset({"size", "tags"}),
    )
    policy = LifecyclePolicy(ignore_all_changes=True)
    plan = make_plan(planner, [node("memory_a.a", lifecycle=policy, size=1)], snapshot(prior))
    assert plan.change_for("memory_a.a").action == Action.NOOP


def test_destroy_mode_orders_by_declared_edges(planner):
    # State still records b -> y; the configuration now says b -> a.
    snap = snapshot(
        entry("memory_file.a"),
        entry("memory_file.b", depends_on=["memory_file.y"]),
        entry("memory_file.y"),
    )
    plan = make_plan(
        planner,
        [node("memory_file.a"), node("memory_file.b", depends_on=["memory_file.a"]), node("memory_file.y")],
        snap,
        destroy=True,
    )
    ids = [s.id for s in plan.steps]
    assert ids.index("destroy:memory_file.b") < ids.index("destroy:memory_file.a")
    assert plan.steps[ids.index("destroy:memory_file.a")].depends_on == {"destroy:memory_file.b"}
