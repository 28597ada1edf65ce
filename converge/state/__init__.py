"""State store — versioned snapshots per workspace, plus the lock record."""

from converge.state.base import StateBackend, check_successor, validate_workspace_name
from converge.state.factory import create_backend
from converge.state.local import LocalBackend
from converge.state.memory import MemoryBackend

__all__ = [
    "LocalBackend",
    "MemoryBackend",
    "StateBackend",
    "check_successor",
    "create_backend",
    "validate_workspace_name",
]
