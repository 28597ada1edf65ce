"""Base state backend — abstract interface for snapshot persistence and locks."""

from __future__ import annotations

import re
from abc import ABC, abstractmethod

from converge.errors import StaleSnapshotError, WorkspaceNotFoundError
from converge.models import Lock, StateSnapshot

_WORKSPACE_RE = re.compile(r"^[A-Za-z0-9_-]+$")


def validate_workspace_name(name: str) -> str:
    if not _WORKSPACE_RE.match(name or ""):
        raise ValueError(f"Invalid workspace name: {name!r} (use letters, digits, '_' and '-')")
    return name


def check_successor(workspace: str, current: StateSnapshot | None, new: StateSnapshot):
    """Optimistic-concurrency rule: same lineage, serial exactly one above the stored one."""
    if current is None:
        raise WorkspaceNotFoundError(workspace)
    if new.lineage_id != current.lineage_id:
        raise StaleSnapshotError(
            workspace, f"lineage {new.lineage_id} does not match stored lineage {current.lineage_id}"
        )
    if new.serial != current.serial + 1:
        raise StaleSnapshotError(
            workspace, f"serial {new.serial} does not follow stored serial {current.serial}"
        )


class StateBackend(ABC):
    """Owns persisted snapshots and the per-workspace lock record."""

    # ------------------------------------------------------------------
    # Snapshots
    # ------------------------------------------------------------------

    @abstractmethod
    def load(self, workspace: str) -> StateSnapshot:
        """Latest snapshot. Raises WorkspaceNotFoundError for unknown workspaces."""

    @abstractmethod
    def save(self, snapshot: StateSnapshot) -> None:
        """Persist ``snapshot``. Raises StaleSnapshotError unless it succeeds the stored one."""

    # ------------------------------------------------------------------
    # Locks (conditional write on one record per workspace)
    # ------------------------------------------------------------------

    @abstractmethod
    def acquire_lock(self, lock: Lock) -> None:
        """Create the lock record if absent, else raise LockHeldError."""

    @abstractmethod
    def release_lock(self, workspace: str, lock_id: str) -> bool:
        """Remove the record if it still carries ``lock_id``. Returns whether it did."""

    @abstractmethod
    def get_lock(self, workspace: str) -> Lock | None:
        """Current lock record, if any."""

    @abstractmethod
    def delete_lock(self, workspace: str) -> Lock | None:
        """Unconditionally remove the record, returning what was there."""

    # ------------------------------------------------------------------
    # Workspaces
    # ------------------------------------------------------------------

    @abstractmethod
    def list_workspaces(self) -> list[str]:
        """Names of all workspaces, sorted."""

    @abstractmethod
    def create_workspace(self, workspace: str) -> StateSnapshot:
        """Persist serial-0 snapshot with a fresh lineage. Raises WorkspaceExistsError."""

    @abstractmethod
    def delete_workspace(self, workspace: str) -> None:
        """Remove a workspace and all its snapshots."""

    def has_workspace(self, workspace: str) -> bool:
        return workspace in self.list_workspaces()
