"""Backend factory — create the right state backend from a spec string."""

from __future__ import annotations

from pathlib import Path

from converge import config
from converge.state.base import StateBackend
from converge.state.local import LocalBackend
from converge.state.memory import MemoryBackend


def parse_backend_spec(spec: str) -> tuple[str, str | None]:
    """Parse 'kind' or 'kind:location' into (kind, location)."""
    if ":" in spec:
        kind, location = spec.split(":", 1)
        return kind.lower(), location or None
    return spec.lower(), None


def create_backend(spec: str | None = None) -> StateBackend:
    """Create a backend for ``spec`` (defaults to config.STATE_BACKEND)."""
    kind, location = parse_backend_spec(spec or config.STATE_BACKEND)

    if kind == "memory":
        return MemoryBackend()
    elif kind == "local":
        return LocalBackend(Path(location) if location else config.STATE_DIR)
    else:
        raise ValueError(f"Unknown state backend: {kind}. Use 'memory' or 'local[:path]'.")
