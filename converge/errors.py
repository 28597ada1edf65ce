"""Error taxonomy — structural, recoverable, provider and aggregate failures."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from converge.models import ResourceAddress, StateSnapshot


class ConvergeError(Exception):
    """Base class for every error raised by the engine."""

    retryable = False

    def to_dict(self) -> dict[str, Any]:
        return {"type": type(self).__name__, "message": str(self), "retryable": self.retryable}


# ---------------------------------------------------------------------------
# Graph errors (raised before anything is planned)
# ---------------------------------------------------------------------------


class GraphError(ConvergeError):
    pass


class DuplicateAddressError(GraphError):
    def __init__(self, address: ResourceAddress):
        self.address = address
        super().__init__(f"Duplicate resource address: {address}")

    def to_dict(self) -> dict[str, Any]:
        return {**super().to_dict(), "address": str(self.address)}


class CycleDetectedError(GraphError):
    def __init__(self, cycle: list[ResourceAddress]):
        self.cycle = list(cycle)
        path = " -> ".join(str(a) for a in self.cycle)
        super().__init__(f"Dependency cycle detected: {path}")

    def to_dict(self) -> dict[str, Any]:
        return {**super().to_dict(), "cycle": [str(a) for a in self.cycle]}


class UnknownReferenceError(GraphError):
    def __init__(self, source: ResourceAddress, target: ResourceAddress):
        self.source = source
        self.target = target
        super().__init__(f"{source} references undeclared resource {target}")

    def to_dict(self) -> dict[str, Any]:
        return {**super().to_dict(), "source": str(self.source), "target": str(self.target)}


# ---------------------------------------------------------------------------
# Plan errors (fatal, pre-apply)
# ---------------------------------------------------------------------------


class PlanError(ConvergeError):
    pass


class PlanOrderingConflictError(PlanError):
    """No single order satisfies both the create and the destroy constraints."""

    def __init__(self, cycle: list[str]):
        self.cycle = list(cycle)
        super().__init__(f"Plan ordering conflict: {' -> '.join(self.cycle)}")

    def to_dict(self) -> dict[str, Any]:
        return {**super().to_dict(), "cycle": self.cycle}


class DestroyPreventedError(PlanError):
    def __init__(self, address: ResourceAddress):
        self.address = address
        super().__init__(
            f"{address} has lifecycle.prevent_destroy set but the plan would destroy it"
        )

    def to_dict(self) -> dict[str, Any]:
        return {**super().to_dict(), "address": str(self.address)}


# ---------------------------------------------------------------------------
# Recoverable errors (caller retries or re-plans)
# ---------------------------------------------------------------------------


class RecoverableError(ConvergeError):
    retryable = True


class LockHeldError(RecoverableError):
    def __init__(self, workspace: str, holder: str, acquired_at: float, operation: str = ""):
        self.workspace = workspace
        self.holder = holder
        self.acquired_at = acquired_at
        self.operation = operation
        super().__init__(
            f"State for workspace '{workspace}' is locked by {holder}"
            + (f" ({operation})" if operation else "")
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            **super().to_dict(),
            "workspace": self.workspace,
            "holder": self.holder,
            "acquired_at": self.acquired_at,
            "operation": self.operation,
        }


class StaleSnapshotError(RecoverableError):
    def __init__(self, workspace: str, detail: str):
        self.workspace = workspace
        super().__init__(f"Stale snapshot for workspace '{workspace}': {detail}")


# ---------------------------------------------------------------------------
# State errors
# ---------------------------------------------------------------------------


class StateError(ConvergeError):
    pass


class WorkspaceNotFoundError(StateError):
    def __init__(self, workspace: str):
        self.workspace = workspace
        super().__init__(f"Workspace '{workspace}' does not exist")


class WorkspaceExistsError(StateError):
    def __init__(self, workspace: str):
        self.workspace = workspace
        super().__init__(f"Workspace '{workspace}' already exists")


class WorkspaceNotEmptyError(StateError):
    def __init__(self, workspace: str, count: int):
        self.workspace = workspace
        self.count = count
        super().__init__(f"Workspace '{workspace}' still tracks {count} resource(s)")


class ResourceNotFoundError(StateError):
    def __init__(self, address: ResourceAddress | str):
        self.address = address
        super().__init__(f"No state entry for {address}")


class ResourceAlreadyManagedError(StateError):
    def __init__(self, address: ResourceAddress | str):
        self.address = address
        super().__init__(f"{address} is already tracked in state")


# ---------------------------------------------------------------------------
# Provider errors
# ---------------------------------------------------------------------------


class ProviderNotFoundError(ConvergeError):
    def __init__(self, name: str):
        self.name = name
        super().__init__(f"No provider registered under '{name}'")


class ReferenceResolutionError(ConvergeError):
    def __init__(self, address: ResourceAddress, ref: str):
        self.address = address
        self.ref = ref
        super().__init__(f"{address}: reference {ref} has no value after its dependency applied")


class ProviderError(ConvergeError):
    """A provider call failed for one specific change."""

    def __init__(self, address: ResourceAddress, operation: str, cause: BaseException):
        self.address = address
        self.operation = operation
        self.cause = cause
        super().__init__(f"{operation} {address} failed: {cause}")

    def to_dict(self) -> dict[str, Any]:
        return {
            **super().to_dict(),
            "address": str(self.address),
            "operation": self.operation,
            "cause": f"{type(self.cause).__name__}: {self.cause}",
        }


# ---------------------------------------------------------------------------
# Aggregate
# ---------------------------------------------------------------------------


class PartialApplyError(ConvergeError):
    """Terminal result of an apply where some steps failed or never ran."""

    def __init__(
        self,
        failed: list[ConvergeError],
        skipped: list[dict[str, Any]],
        state: StateSnapshot | None = None,
        state_error: BaseException | None = None,
        cancelled: bool = False,
    ):
        self.failed = list(failed)
        self.skipped = list(skipped)
        self.state = state
        self.state_error = state_error
        self.cancelled = cancelled
        parts = [f"{len(self.failed)} failed", f"{len(self.skipped)} skipped"]
        if cancelled:
            parts.append("cancelled")
        if state_error is not None:
            parts.append(f"state write failed: {state_error}")
        super().__init__("Apply incomplete: " + ", ".join(parts))

    def to_dict(self) -> dict[str, Any]:
        return {
            **super().to_dict(),
            "failed": [e.to_dict() for e in self.failed],
            "skipped": self.skipped,
            "cancelled": self.cancelled,
            "state_error": str(self.state_error) if self.state_error else None,
            "serial": self.state.serial if self.state else None,
        }
