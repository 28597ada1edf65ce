"""Event system — bounded recent-event window plus a retained audit trail."""

from __future__ import annotations

import asyncio
import json
import logging
from collections import deque
from itertools import islice
from pathlib import Path

from converge import config
from converge.models import Event

logger = logging.getLogger(__name__)

# Operator actions that bypass plan/apply; these never age out of memory.
AUDIT_EVENTS = frozenset(
    {
        "lock.force_released",
        "state.rm",
        "state.mv",
        "state.taint",
        "state.untaint",
        "state.imported",
        "workspace.created",
        "workspace.deleted",
    }
)


class EventBus:
    """Engine event stream.

    ``recent`` pages over the last ``history_size`` events. Audit events are
    also kept in a separate trail that is never trimmed, and every event goes to
    the JSONL log when one is configured.
    """

    def __init__(self, log_file: Path | str | None = None, history_size: int | None = None):
        self._log_file = Path(log_file) if log_file else None
        self._subscribers: list[asyncio.Queue] = []
        self._history: deque[Event] = deque(maxlen=max(1, history_size or config.EVENT_HISTORY))
        self._audit: list[Event] = []
        self.emitted = 0

        if self._log_file:
            self._log_file.parent.mkdir(parents=True, exist_ok=True)

    def emit(self, event: Event):
        """Record, persist and fan out one event."""
        self.emitted += 1
        self._history.append(event)
        if event.type in AUDIT_EVENTS:
            self._audit.append(event)
            logger.info(f"Audit: {event.type} [{event.workspace}] {event.data}")
        else:
            logger.debug(f"Event: {event.type} [{event.workspace}] {event.data}")
        self._persist(event)
        self._notify(event)

    def emit_simple(self, type: str, workspace: str, **data):
        self.emit(Event(type=type, workspace=workspace, data=data))

    @property
    def dropped(self) -> int:
        """Events that have aged out of the recent window."""
        return self.emitted - len(self._history)

    def recent(self, limit: int = 50, offset: int = 0) -> list[Event]:
        """The newest events, oldest first, skipping the ``offset`` most recent."""
        end = max(0, len(self._history) - offset)
        start = max(0, end - limit)
        return list(islice(self._history, start, end))

    def audit_trail(self, workspace: str | None = None) -> list[Event]:
        return [e for e in self._audit if workspace is None or e.workspace == workspace]

    def of_type(self, type: str) -> list[Event]:
        source = self._audit if type in AUDIT_EVENTS else self._history
        return [e for e in source if e.type == type]

    def subscribe(self) -> asyncio.Queue:
        q: asyncio.Queue = asyncio.Queue(maxsize=1000)
        self._subscribers.append(q)
        return q

    def unsubscribe(self, q: asyncio.Queue):
        if q in self._subscribers:
            self._subscribers.remove(q)

    def _persist(self, event: Event):
        if self._log_file:
            with open(self._log_file, "a") as f:
                f.write(json.dumps(event.to_dict(), default=str) + "\n")

    def _notify(self, event: Event):
        for q in self._subscribers:
            try:
                q.put_nowait(event)
            except asyncio.QueueFull:
                logger.warning(f"Dropping event {event.type} for a slow subscriber")
