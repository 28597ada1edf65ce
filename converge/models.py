"""Core data structures for Converge."""

from __future__ import annotations

import re
import time
import uuid
from collections.abc import Iterable
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Callable

DEFAULT_WORKSPACE = "default"

_MISSING = object()


def generate_id() -> str:
    return uuid.uuid4().hex[:12]


def generate_lineage() -> str:
    return str(uuid.uuid4())


# ---------------------------------------------------------------------------
# Addresses & Paths
# ---------------------------------------------------------------------------

_ADDRESS_RE = re.compile(
    r'^(?P<type>[A-Za-z][A-Za-z0-9_-]*)\.(?P<name>[A-Za-z_][A-Za-z0-9_-]*)'
    r'(?:\[(?P<index>\d+|"[^"]*")\])?'
)
_PATH_TOKEN_RE = re.compile(r'\.?([A-Za-z0-9_-]+)|\[(\d+)\]|\["([^"]*)"\]')


def _parse_index(raw: str | None) -> int | str | None:
    if raw is None:
        return None
    if raw.startswith('"'):
        return raw[1:-1]
    return int(raw)


@dataclass(frozen=True)
class ResourceAddress:
    """Identity of one resource instance: (type, name, workspace, index?)."""

    type: str
    name: str
    workspace: str = DEFAULT_WORKSPACE
    index: int | str | None = None

    @property
    def key(self) -> str:
        """Workspace-less form used as the state key, e.g. ``memory_file.cfg[0]``."""
        base = f"{self.type}.{self.name}"
        if self.index is None:
            return base
        if isinstance(self.index, int):
            return f"{base}[{self.index}]"
        return f'{base}["{self.index}"]'

    def __str__(self) -> str:
        return self.key

    def in_workspace(self, workspace: str) -> ResourceAddress:
        return replace(self, workspace=workspace)

    @classmethod
    def parse(cls, text: str, workspace: str = DEFAULT_WORKSPACE) -> ResourceAddress:
        text = text.strip()
        m = _ADDRESS_RE.match(text)
        if not m or m.end() != len(text):
            raise ValueError(f"Invalid resource address: {text!r}")
        return cls(
            type=m.group("type"),
            name=m.group("name"),
            workspace=workspace,
            index=_parse_index(m.group("index")),
        )


@dataclass(frozen=True)
class AttributePath:
    """Structural path into an attribute map: ``tags.Name`` -> ("tags", "Name")."""

    steps: tuple[str | int, ...]

    @classmethod
    def parse(cls, text: str) -> AttributePath:
        steps: list[str | int] = []
        pos = 0
        while pos < len(text):
            m = _PATH_TOKEN_RE.match(text, pos)
            if not m or m.end() == pos:
                raise ValueError(f"Invalid attribute path: {text!r}")
            key, idx, quoted = m.groups()
            if key is not None:
                steps.append(key)
            elif idx is not None:
                steps.append(int(idx))
            else:
                steps.append(quoted)
            pos = m.end()
        if not steps:
            raise ValueError("Attribute path must not be empty")
        return cls(tuple(steps))

    def __str__(self) -> str:
        out = ""
        for step in self.steps:
            if isinstance(step, int):
                out += f"[{step}]"
            elif out:
                out += f".{step}"
            else:
                out = step
        return out

    def covers(self, other: AttributePath) -> bool:
        """True if ``other`` is this path or lies beneath it."""
        return other.steps[: len(self.steps)] == self.steps

    def get(self, value: Any, default: Any = _MISSING) -> Any:
        current = value
        for step in self.steps:
            if isinstance(current, dict) and step in current:
                current = current[step]
            elif isinstance(current, list) and isinstance(step, int) and step < len(current):
                current = current[step]
            elif default is _MISSING:
                raise KeyError(str(self))
            else:
                return default
        return current

    def assign(self, value: dict[str, Any], new: Any) -> dict[str, Any]:
        """Return a copy of ``value`` with ``new`` placed at this path."""
        return _assign(value, self.steps, new)

    def remove(self, value: dict[str, Any]) -> dict[str, Any]:
        """Return a copy of ``value`` without this path (no-op if absent)."""
        return _remove(value, self.steps)


def _assign(container: Any, steps: tuple[str | int, ...], new: Any) -> Any:
    if not steps:
        return new
    head, rest = steps[0], steps[1:]
    if isinstance(container, dict):
        out = dict(container)
        out[head] = _assign(container.get(head), rest, new)
        return out
    if isinstance(container, list) and isinstance(head, int) and head < len(container):
        out_list = list(container)
        out_list[head] = _assign(container[head], rest, new)
        return out_list
    if container is None and isinstance(head, str):
        return {head: _assign(None, rest, new)}
    return container


def _remove(container: Any, steps: tuple[str | int, ...]) -> Any:
    head, rest = steps[0], steps[1:]
    if isinstance(container, dict) and head in container:
        out = dict(container)
        if rest:
            out[head] = _remove(container[head], rest)
        else:
            del out[head]
        return out
    if isinstance(container, list) and isinstance(head, int) and head < len(container) and rest:
        out_list = list(container)
        out_list[head] = _remove(container[head], rest)
        return out_list
    return container


# ---------------------------------------------------------------------------
# Symbolic References & Values
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Ref:
    """A not-yet-known value: attribute ``attribute`` of resource ``address``."""

    address: ResourceAddress
    attribute: AttributePath

    def __str__(self) -> str:
        return f"{self.address.key}.{self.attribute}"

    @classmethod
    def parse(cls, text: str, workspace: str = DEFAULT_WORKSPACE) -> Ref:
        m = _ADDRESS_RE.match(text.strip())
        rest = text.strip()[m.end():] if m else ""
        if not m or not rest.startswith("."):
            raise ValueError(f"Invalid reference: {text!r}")
        address = ResourceAddress(
            type=m.group("type"),
            name=m.group("name"),
            workspace=workspace,
            index=_parse_index(m.group("index")),
        )
        return cls(address=address, attribute=AttributePath.parse(rest[1:]))


def find_refs(value: Any) -> list[Ref]:
    """All references nested anywhere in ``value``."""
    if isinstance(value, Ref):
        return [value]
    if isinstance(value, dict):
        return [r for v in value.values() for r in find_refs(v)]
    if isinstance(value, (list, tuple)):
        return [r for v in value for r in find_refs(v)]
    return []


def is_known(value: Any) -> bool:
    return not find_refs(value)


def resolve_refs(value: Any, lookup: Callable[[Ref], Any]) -> Any:
    """Substitute references via ``lookup``; a KeyError leaves the reference in place."""
    if isinstance(value, Ref):
        try:
            return lookup(value)
        except KeyError:
            return value
    if isinstance(value, dict):
        return {k: resolve_refs(v, lookup) for k, v in value.items()}
    if isinstance(value, list):
        return [resolve_refs(v, lookup) for v in value]
    if isinstance(value, tuple):
        return tuple(resolve_refs(v, lookup) for v in value)
    return value


def values_equal(a: Any, b: Any) -> bool:
    """Structural equality where the type must match exactly (80 != "80", 1 != True)."""
    if type(a) is not type(b):
        return False
    if isinstance(a, dict):
        return a.keys() == b.keys() and all(values_equal(a[k], b[k]) for k in a)
    if isinstance(a, (list, tuple)):
        return len(a) == len(b) and all(values_equal(x, y) for x, y in zip(a, b))
    return a == b


def diff_paths(
    desired: dict[str, Any],
    prior: dict[str, Any],
    configured: Iterable[str] = (),
) -> list[AttributePath]:
    """Leaf paths where ``desired`` differs from ``prior``.

    A top-level key that exists only in ``prior`` counts as a change when it is
    in ``configured`` (it was set by the caller last time and has since been
    removed); otherwise it is provider-computed and never drift.
    """
    changed: list[AttributePath] = []
    for key, want in desired.items():
        if key not in prior:
            changed.append(AttributePath((key,)))
        else:
            changed.extend(_diff_value(want, prior[key], (key,)))
    for key in sorted(set(configured) - desired.keys()):
        if key in prior:
            changed.append(AttributePath((key,)))
    return changed


def _diff_value(want: Any, have: Any, path: tuple[str | int, ...]) -> list[AttributePath]:
    if isinstance(want, dict) and isinstance(have, dict):
        out: list[AttributePath] = []
        for key in sorted(set(want) | set(have), key=str):
            if key not in want or key not in have:
                out.append(AttributePath(path + (key,)))
            else:
                out.extend(_diff_value(want[key], have[key], path + (key,)))
        return out
    if isinstance(want, list) and isinstance(have, list) and len(want) == len(have):
        out = []
        for i, (w, h) in enumerate(zip(want, have)):
            out.extend(_diff_value(w, h, path + (i,)))
        return out
    return [] if values_equal(want, have) else [AttributePath(path)]


def encode_value(value: Any) -> Any:
    """JSON-safe form; references become ``{"$ref": "type.name.attr"}``."""
    if isinstance(value, Ref):
        return {"$ref": str(value)}
    if isinstance(value, dict):
        return {k: encode_value(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [encode_value(v) for v in value]
    return value


def decode_value(value: Any, workspace: str = DEFAULT_WORKSPACE) -> Any:
    if isinstance(value, dict):
        if set(value) == {"$ref"}:
            return Ref.parse(value["$ref"], workspace=workspace)
        return {k: decode_value(v, workspace) for k, v in value.items()}
    if isinstance(value, list):
        return [decode_value(v, workspace) for v in value]
    return value


# ---------------------------------------------------------------------------
# Desired State
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class LifecyclePolicy:
    create_before_destroy: bool = False
    prevent_destroy: bool = False
    ignore_changes: frozenset[AttributePath] = frozenset()
    ignore_all_changes: bool = False

    def ignores(self, path: AttributePath) -> bool:
        return self.ignore_all_changes or any(p.covers(path) for p in self.ignore_changes)

    def to_dict(self) -> dict:
        return {
            "create_before_destroy": self.create_before_destroy,
            "prevent_destroy": self.prevent_destroy,
            "ignore_changes": "all" if self.ignore_all_changes else sorted(str(p) for p in self.ignore_changes),
        }

    @classmethod
    def from_dict(cls, data: dict | None) -> LifecyclePolicy:
        data = data or {}
        ignore = data.get("ignore_changes") or []
        if isinstance(ignore, str) and ignore != "all":
            ignore = [ignore]
        return cls(
            create_before_destroy=bool(data.get("create_before_destroy", False)),
            prevent_destroy=bool(data.get("prevent_destroy", False)),
            ignore_changes=frozenset() if ignore == "all" else frozenset(AttributePath.parse(p) for p in ignore),
            ignore_all_changes=ignore == "all",
        )


@dataclass
class ResourceNode:
    """One desired resource as described by the caller."""

    address: ResourceAddress
    desired_attributes: dict[str, Any] = field(default_factory=dict)
    depends_on: set[ResourceAddress] = field(default_factory=set)
    provider_ref: str | None = None
    lifecycle: LifecyclePolicy = field(default_factory=LifecyclePolicy)

    def references(self) -> set[ResourceAddress]:
        return {r.address for r in find_refs(self.desired_attributes)}

    def with_attributes(self, attributes: dict[str, Any]) -> ResourceNode:
        return replace(self, desired_attributes=attributes)

    def to_dict(self) -> dict:
        return {
            "type": self.address.type,
            "name": self.address.name,
            "index": self.address.index,
            "attributes": encode_value(self.desired_attributes),
            "depends_on": sorted(a.key for a in self.depends_on),
            "provider": self.provider_ref,
            "lifecycle": self.lifecycle.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: dict, workspace: str = DEFAULT_WORKSPACE) -> ResourceNode:
        return cls(
            address=ResourceAddress(
                type=data["type"], name=data["name"], workspace=workspace, index=data.get("index")
            ),
            desired_attributes=decode_value(data.get("attributes") or {}, workspace),
            depends_on={ResourceAddress.parse(a, workspace) for a in data.get("depends_on") or []},
            provider_ref=data.get("provider"),
            lifecycle=LifecyclePolicy.from_dict(data.get("lifecycle")),
        )


# ---------------------------------------------------------------------------
# Recorded State
# ---------------------------------------------------------------------------


@dataclass
class StateEntry:
    """Last-known applied state of one live resource instance."""

    address: ResourceAddress
    applied_attributes: dict[str, Any] = field(default_factory=dict)
    provider_id: str = ""  # opaque handle the provider uses to find the live resource
    schema_version: int = 0
    last_applied_at: float = field(default_factory=time.time)
    depends_on: set[ResourceAddress] = field(default_factory=set)
    provider_ref: str | None = None
    lifecycle: LifecyclePolicy = field(default_factory=LifecyclePolicy)
    tainted: bool = False
    configured_keys: frozenset[str] = frozenset()  # top-level attributes the caller set at last apply

    def to_dict(self) -> dict:
        return {
            "address": self.address.key,
            "applied_attributes": self.applied_attributes,
            "configured_keys": sorted(self.configured_keys),
            "provider_id": self.provider_id,
            "schema_version": self.schema_version,
            "last_applied_at": self.last_applied_at,
            "depends_on": sorted(a.key for a in self.depends_on),
            "provider": self.provider_ref,
            "lifecycle": self.lifecycle.to_dict(),
            "tainted": self.tainted,
        }

    @classmethod
    def from_dict(cls, data: dict, workspace: str = DEFAULT_WORKSPACE) -> StateEntry:
        return cls(
            address=ResourceAddress.parse(data["address"], workspace),
            applied_attributes=dict(data.get("applied_attributes") or {}),
            provider_id=data.get("provider_id", ""),
            schema_version=int(data.get("schema_version", 0)),
            last_applied_at=float(data.get("last_applied_at", 0.0)),
            depends_on={ResourceAddress.parse(a, workspace) for a in data.get("depends_on") or []},
            provider_ref=data.get("provider"),
            lifecycle=LifecyclePolicy.from_dict(data.get("lifecycle")),
            tainted=bool(data.get("tainted", False)),
            configured_keys=frozenset(data.get("configured_keys") or ()),
        )


def _key(address: ResourceAddress | str) -> str:
    return address if isinstance(address, str) else address.key


@dataclass(frozen=True)
class StateSnapshot:
    """Versioned, immutable view of a workspace's recorded resources.

    Every mutation goes through ``evolve`` and yields serial + 1; the backend
    only accepts a save whose serial is exactly one above what it holds.
    """

    workspace_id: str
    serial: int = 0
    lineage_id: str = field(default_factory=generate_lineage)
    entries: dict[str, StateEntry] = field(default_factory=dict)
    deposed: dict[str, StateEntry] = field(default_factory=dict)  # old halves of create-before-destroy

    def get(self, address: ResourceAddress | str) -> StateEntry | None:
        return self.entries.get(_key(address))

    def addresses(self) -> list[ResourceAddress]:
        return [e.address for _, e in sorted(self.entries.items())]

    def __len__(self) -> int:
        return len(self.entries)

    def evolve(
        self,
        entries: dict[str, StateEntry] | None = None,
        deposed: dict[str, StateEntry] | None = None,
    ) -> StateSnapshot:
        return replace(
            self,
            serial=self.serial + 1,
            entries=dict(self.entries if entries is None else entries),
            deposed=dict(self.deposed if deposed is None else deposed),
        )

    def with_entry(self, entry: StateEntry) -> StateSnapshot:
        return self.evolve(entries={**self.entries, entry.address.key: entry})

    def without_entry(self, address: ResourceAddress | str) -> StateSnapshot:
        entries = dict(self.entries)
        entries.pop(_key(address), None)
        return self.evolve(entries=entries)

    def to_dict(self) -> dict:
        return {
            "workspace_id": self.workspace_id,
            "serial": self.serial,
            "lineage_id": self.lineage_id,
            "entries": {k: e.to_dict() for k, e in sorted(self.entries.items())},
            "deposed": {k: e.to_dict() for k, e in sorted(self.deposed.items())},
        }

    @classmethod
    def from_dict(cls, data: dict) -> StateSnapshot:
        ws = data["workspace_id"]
        return cls(
            workspace_id=ws,
            serial=int(data["serial"]),
            lineage_id=data["lineage_id"],
            entries={k: StateEntry.from_dict(v, ws) for k, v in (data.get("entries") or {}).items()},
            deposed={k: StateEntry.from_dict(v, ws) for k, v in (data.get("deposed") or {}).items()},
        )


# ---------------------------------------------------------------------------
# Plans
# ---------------------------------------------------------------------------


class Action(str, Enum):
    CREATE = "create"
    UPDATE = "update"
    DESTROY = "destroy"
    REPLACE = "replace"
    NOOP = "no-op"


@dataclass
class Change:
    address: ResourceAddress
    action: Action
    before: StateEntry | None = None
    after: ResourceNode | None = None
    lifecycle: LifecyclePolicy = field(default_factory=LifecyclePolicy)
    changed_paths: list[AttributePath] = field(default_factory=list)
    reason: str = ""
    deposed: bool = False

    @property
    def is_create_before_destroy(self) -> bool:
        return self.action == Action.REPLACE and self.lifecycle.create_before_destroy

    def to_dict(self) -> dict:
        return {
            "address": self.address.key,
            "action": self.action.value,
            "before": self.before.to_dict() if self.before else None,
            "after": self.after.to_dict() if self.after else None,
            "changed_paths": [str(p) for p in self.changed_paths],
            "reason": self.reason,
            "deposed": self.deposed,
            "lifecycle": self.lifecycle.to_dict(),
        }


@dataclass
class PlanStep:
    """One provider call in the executable sequence."""

    id: str
    operation: str  # create | update | destroy
    change: Change
    depends_on: set[str] = field(default_factory=set)
    status: str = "pending"  # pending | running | succeeded | failed | skipped
    error: str | None = None

    @property
    def address(self) -> ResourceAddress:
        return self.change.address

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "operation": self.operation,
            "address": self.change.address.key,
            "depends_on": sorted(self.depends_on),
            "status": self.status,
            "error": self.error,
        }


def step_id(operation: str, address: ResourceAddress, deposed: bool = False) -> str:
    return f"{operation}:{address.key}" + (":deposed" if deposed else "")


@dataclass
class Plan:
    workspace_id: str
    lineage_id: str
    prior_serial: int
    changes: list[Change] = field(default_factory=list)
    steps: list[PlanStep] = field(default_factory=list)
    destroy_mode: bool = False
    drift: list[dict] = field(default_factory=list)
    id: str = field(default_factory=generate_id)
    created_at: float = field(default_factory=time.time)

    @property
    def has_changes(self) -> bool:
        return any(c.action != Action.NOOP for c in self.changes)

    def summary(self) -> dict[str, int]:
        counts = {a.value: 0 for a in Action}
        for c in self.changes:
            counts[c.action.value] += 1
        return counts

    def change_for(self, address: ResourceAddress | str) -> Change | None:
        key = _key(address)
        for c in self.changes:
            if c.address.key == key and not c.deposed:
                return c
        return None

    def actions(self) -> list[tuple[str, str]]:
        """(action, address) pairs in plan order, skipping no-ops."""
        return [(c.action.value, c.address.key) for c in self.changes if c.action != Action.NOOP]

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "workspace_id": self.workspace_id,
            "lineage_id": self.lineage_id,
            "prior_serial": self.prior_serial,
            "destroy_mode": self.destroy_mode,
            "created_at": self.created_at,
            "summary": self.summary(),
            "changes": [c.to_dict() for c in self.changes],
            "steps": [s.to_dict() for s in self.steps],
            "drift": self.drift,
        }


# ---------------------------------------------------------------------------
# Locks & Events
# ---------------------------------------------------------------------------


@dataclass
class Lock:
    key: str  # workspace id
    holder_id: str
    operation_kind: str
    acquired_at: float = field(default_factory=time.time)
    lock_id: str = field(default_factory=generate_id)

    def to_dict(self) -> dict:
        return {
            "key": self.key,
            "holder_id": self.holder_id,
            "operation_kind": self.operation_kind,
            "acquired_at": self.acquired_at,
            "lock_id": self.lock_id,
        }

    @classmethod
    def from_dict(cls, data: dict) -> Lock:
        return cls(
            key=data["key"],
            holder_id=data["holder_id"],
            operation_kind=data.get("operation_kind", ""),
            acquired_at=float(data.get("acquired_at", 0.0)),
            lock_id=data["lock_id"],
        )


@dataclass
class Event:
    type: str
    workspace: str
    ts: float = field(default_factory=time.time)
    data: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {"type": self.type, "workspace": self.workspace, "ts": self.ts, "data": self.data}
