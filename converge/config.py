"""Configuration loading and defaults.

Reads from config.toml at the project root, with environment variable overrides.
"""

from __future__ import annotations

import os
import tomllib
from pathlib import Path

from dotenv import load_dotenv

# Look for .env in the package's parent directory (project root)
_project_root = Path(__file__).resolve().parent.parent
load_dotenv(_project_root / ".env")
load_dotenv()  # also check cwd

# ---------------------------------------------------------------------------
# Load config.toml
# ---------------------------------------------------------------------------

_toml_path = Path(os.getenv("CONVERGE_CONFIG", str(_project_root / "config.toml")))
_cfg: dict = {}
if _toml_path.exists():
    with open(_toml_path, "rb") as f:
        _cfg = tomllib.load(f)

_state = _cfg.get("state", {})
_engine = _cfg.get("engine", {})
_locks = _cfg.get("locks", {})
_server = _cfg.get("server", {})

# ---------------------------------------------------------------------------
# State storage
# ---------------------------------------------------------------------------

STATE_BACKEND = os.getenv("CONVERGE_STATE_BACKEND", _state.get("backend", "local"))  # local | memory
STATE_DIR = Path(os.getenv("CONVERGE_STATE_DIR", _state.get("dir", str(Path.cwd() / ".converge"))))
DEFAULT_WORKSPACE = os.getenv("CONVERGE_DEFAULT_WORKSPACE", _state.get("default_workspace", "default"))

# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------

MAX_PARALLELISM = int(os.getenv("CONVERGE_PARALLELISM", _engine.get("parallelism", 10)))
EVENT_LOG = os.getenv("CONVERGE_EVENT_LOG", _engine.get("event_log", "")) or None
EVENT_HISTORY = int(os.getenv("CONVERGE_EVENT_HISTORY", _engine.get("event_history", 1000)))

# ---------------------------------------------------------------------------
# Locks
# ---------------------------------------------------------------------------

LOCK_TIMEOUT = float(os.getenv("CONVERGE_LOCK_TIMEOUT", _locks.get("timeout", 0.0)))
LOCK_RETRY_INTERVAL = float(os.getenv("CONVERGE_LOCK_RETRY_INTERVAL", _locks.get("retry_interval", 1.0)))

# ---------------------------------------------------------------------------
# Server
# ---------------------------------------------------------------------------

SERVER_HOST = os.getenv("CONVERGE_HOST", _server.get("host", "127.0.0.1"))
SERVER_PORT = int(os.getenv("CONVERGE_PORT", _server.get("port", 8000)))
