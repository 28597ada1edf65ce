"""Filesystem state backend — one directory per workspace.

Layout under ``root``::

    <workspace>/state.json          latest snapshot
    <workspace>/state.json.backup   previous snapshot
    <workspace>/lock.json           present only while a lock is held

Snapshots are written atomically (temp file + rename). The lock record is created
with O_CREAT|O_EXCL, which is the conditional write other processes race on.
"""

from __future__ import annotations

import contextlib
import json
import logging
import os
import shutil
import tempfile
import threading
from pathlib import Path

from converge.errors import LockHeldError, WorkspaceExistsError, WorkspaceNotFoundError
from converge.models import Lock, StateSnapshot
from converge.state.base import StateBackend, check_successor, validate_workspace_name

logger = logging.getLogger(__name__)

STATE_FILE = "state.json"
LOCK_FILE = "lock.json"


class LocalBackend(StateBackend):
    def __init__(self, root: Path | str):
        self.root = Path(root)
        self._mutex = threading.Lock()

    def _dir(self, workspace: str) -> Path:
        return self.root / validate_workspace_name(workspace)

    def _state_path(self, workspace: str) -> Path:
        return self._dir(workspace) / STATE_FILE

    def _lock_path(self, workspace: str) -> Path:
        return self._dir(workspace) / LOCK_FILE

    # ------------------------------------------------------------------
    # Snapshots
    # ------------------------------------------------------------------

    def _read(self, workspace: str) -> StateSnapshot | None:
        path = self._state_path(workspace)
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return None
        return StateSnapshot.from_dict(data)

    def _write(self, snapshot: StateSnapshot) -> None:
        path = self._state_path(snapshot.workspace_id)
        path.parent.mkdir(parents=True, exist_ok=True)

        backup = path.with_name(STATE_FILE + ".backup")
        with contextlib.suppress(FileNotFoundError):
            backup.write_bytes(path.read_bytes())

        content = json.dumps(snapshot.to_dict(), indent=2, sort_keys=True) + "\n"
        fd, tmp_path = tempfile.mkstemp(prefix=f".{path.name}.", dir=str(path.parent))
        tmp_file = Path(tmp_path)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(content)
                f.flush()
                os.fsync(f.fileno())
            tmp_file.replace(path)
        finally:
            with contextlib.suppress(FileNotFoundError):
                tmp_file.unlink()

    def load(self, workspace: str) -> StateSnapshot:
        snapshot = self._read(workspace)
        if snapshot is None:
            raise WorkspaceNotFoundError(workspace)
        return snapshot

    def save(self, snapshot: StateSnapshot) -> None:
        with self._mutex:
            check_successor(snapshot.workspace_id, self._read(snapshot.workspace_id), snapshot)
            self._write(snapshot)
        logger.debug(f"State saved: workspace={snapshot.workspace_id} serial={snapshot.serial}")

    # ------------------------------------------------------------------
    # Locks
    # ------------------------------------------------------------------

    def acquire_lock(self, lock: Lock) -> None:
        path = self._lock_path(lock.key)
        if not path.parent.exists():
            raise WorkspaceNotFoundError(lock.key)
        try:
            fd = os.open(path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
        except FileExistsError:
            held = self.get_lock(lock.key)
            if held is None:
                # Released between our attempt and the read; report as held, caller retries.
                raise LockHeldError(lock.key, "unknown", 0.0) from None
            raise LockHeldError(lock.key, held.holder_id, held.acquired_at, held.operation_kind) from None
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            json.dump(lock.to_dict(), f)

    def release_lock(self, workspace: str, lock_id: str) -> bool:
        with self._mutex:
            held = self.get_lock(workspace)
            if held is None or held.lock_id != lock_id:
                return False
            with contextlib.suppress(FileNotFoundError):
                self._lock_path(workspace).unlink()
            return True

    def get_lock(self, workspace: str) -> Lock | None:
        try:
            data = json.loads(self._lock_path(workspace).read_text(encoding="utf-8"))
        except FileNotFoundError:
            return None
        except json.JSONDecodeError:
            # Holder is still writing its record.
            return Lock(key=workspace, holder_id="unknown", operation_kind="", acquired_at=0.0, lock_id="")
        return Lock.from_dict(data)

    def delete_lock(self, workspace: str) -> Lock | None:
        with self._mutex:
            held = self.get_lock(workspace)
            with contextlib.suppress(FileNotFoundError):
                self._lock_path(workspace).unlink()
            return held

    # ------------------------------------------------------------------
    # Workspaces
    # ------------------------------------------------------------------

    def list_workspaces(self) -> list[str]:
        if not self.root.exists():
            return []
        return sorted(p.name for p in self.root.iterdir() if (p / STATE_FILE).is_file())

    def create_workspace(self, workspace: str) -> StateSnapshot:
        with self._mutex:
            if self._read(workspace) is not None:
                raise WorkspaceExistsError(workspace)
            snapshot = StateSnapshot(workspace_id=workspace)
            self._write(snapshot)
        logger.info(f"Created workspace '{workspace}' at {self._dir(workspace)}")
        return snapshot

    def delete_workspace(self, workspace: str) -> None:
        with self._mutex:
            if self._read(workspace) is None:
                raise WorkspaceNotFoundError(workspace)
            shutil.rmtree(self._dir(workspace))
