"""Thread-safe in-process state backend."""

from __future__ import annotations

import logging
import threading

from converge.errors import LockHeldError, WorkspaceExistsError, WorkspaceNotFoundError
from converge.models import Lock, StateSnapshot
from converge.state.base import StateBackend, check_successor, validate_workspace_name

logger = logging.getLogger(__name__)


def _copy(snapshot: StateSnapshot) -> StateSnapshot:
    return StateSnapshot.from_dict(snapshot.to_dict())


class MemoryBackend(StateBackend):
    """Snapshots and locks in dicts guarded by one mutex. Shared by every engine holding it."""

    def __init__(self):
        self._snapshots: dict[str, StateSnapshot] = {}
        self._locks: dict[str, Lock] = {}
        self._mutex = threading.Lock()

    def load(self, workspace: str) -> StateSnapshot:
        with self._mutex:
            snapshot = self._snapshots.get(workspace)
        if snapshot is None:
            raise WorkspaceNotFoundError(workspace)
        return _copy(snapshot)

    def save(self, snapshot: StateSnapshot) -> None:
        with self._mutex:
            check_successor(snapshot.workspace_id, self._snapshots.get(snapshot.workspace_id), snapshot)
            self._snapshots[snapshot.workspace_id] = _copy(snapshot)
        logger.debug(f"State saved: workspace={snapshot.workspace_id} serial={snapshot.serial}")

    def acquire_lock(self, lock: Lock) -> None:
        with self._mutex:
            held = self._locks.get(lock.key)
            if held is not None:
                raise LockHeldError(lock.key, held.holder_id, held.acquired_at, held.operation_kind)
            self._locks[lock.key] = lock

    def release_lock(self, workspace: str, lock_id: str) -> bool:
        with self._mutex:
            held = self._locks.get(workspace)
            if held is None or held.lock_id != lock_id:
                return False
            del self._locks[workspace]
            return True

    def get_lock(self, workspace: str) -> Lock | None:
        with self._mutex:
            return self._locks.get(workspace)

    def delete_lock(self, workspace: str) -> Lock | None:
        with self._mutex:
            return self._locks.pop(workspace, None)

    def list_workspaces(self) -> list[str]:
        with self._mutex:
            return sorted(self._snapshots)

    def create_workspace(self, workspace: str) -> StateSnapshot:
        validate_workspace_name(workspace)
        with self._mutex:
            if workspace in self._snapshots:
                raise WorkspaceExistsError(workspace)
            snapshot = StateSnapshot(workspace_id=workspace)
            self._snapshots[workspace] = snapshot
        return _copy(snapshot)

    def delete_workspace(self, workspace: str) -> None:
        with self._mutex:
            if self._snapshots.pop(workspace, None) is None:
                raise WorkspaceNotFoundError(workspace)
            self._locks.pop(workspace, None)
