"""Lock manager — serializes mutating operations against one workspace's state."""

from __future__ import annotations

import asyncio
import logging
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import TYPE_CHECKING, AsyncIterator

from converge import config
from converge.errors import LockHeldError
from converge.models import Lock

if TYPE_CHECKING:
    from converge.events import EventBus
    from converge.state.base import StateBackend

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class LockHandle:
    lock: Lock

    @property
    def workspace(self) -> str:
        return self.lock.key

    @property
    def lock_id(self) -> str:
        return self.lock.lock_id


class LockManager:
    """Acquire/release the single lock record of a workspace through the backend's conditional write."""

    def __init__(
        self,
        backend: StateBackend,
        event_bus: EventBus | None = None,
        retry_interval: float | None = None,
    ):
        self.backend = backend
        self.event_bus = event_bus
        self.retry_interval = config.LOCK_RETRY_INTERVAL if retry_interval is None else retry_interval

    async def acquire(
        self,
        workspace: str,
        holder_id: str,
        operation_kind: str,
        timeout: float | None = None,
    ) -> LockHandle:
        """Take the lock, retrying until ``timeout`` seconds pass (0 = single attempt)."""
        timeout = config.LOCK_TIMEOUT if timeout is None else timeout
        deadline = time.monotonic() + timeout
        while True:
            lock = Lock(key=workspace, holder_id=holder_id, operation_kind=operation_kind)
            try:
                self.backend.acquire_lock(lock)
            except LockHeldError as e:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    logger.info(f"Lock on '{workspace}' held by {e.holder} ({e.operation}); giving up")
                    raise
                logger.debug(f"Lock on '{workspace}' held by {e.holder}; retrying in {self.retry_interval}s")
                await asyncio.sleep(min(self.retry_interval, remaining))
                continue

            logger.info(f"Lock acquired on '{workspace}' by {holder_id} for {operation_kind} [{lock.lock_id}]")
            self._emit("lock.acquired", workspace, holder=holder_id, operation=operation_kind, lock_id=lock.lock_id)
            return LockHandle(lock)

    def release(self, handle: LockHandle):
        """Idempotent: a record that is gone or now belongs to someone else is left alone."""
        if self.backend.release_lock(handle.workspace, handle.lock_id):
            logger.info(f"Lock released on '{handle.workspace}' [{handle.lock_id}]")
            self._emit("lock.released", handle.workspace, holder=handle.lock.holder_id, lock_id=handle.lock_id)
            return

        current = self.backend.get_lock(handle.workspace)
        if current is None:
            logger.debug(f"Lock on '{handle.workspace}' [{handle.lock_id}] already released")
        else:
            logger.warning(
                f"Lock on '{handle.workspace}' is now held by {current.holder_id} [{current.lock_id}]; "
                f"not releasing stale handle [{handle.lock_id}]"
            )

    def force_release(self, workspace: str, operator: str = "operator") -> Lock | None:
        """Operator-only recovery from a crashed holder. Never called by the engine itself."""
        removed = self.backend.delete_lock(workspace)
        holder = removed.holder_id if removed else None
        logger.warning(f"FORCE UNLOCK of '{workspace}' by {operator}; removed holder={holder}")
        self._emit(
            "lock.force_released",
            workspace,
            operator=operator,
            removed=removed.to_dict() if removed else None,
        )
        return removed

    def current(self, workspace: str) -> Lock | None:
        return self.backend.get_lock(workspace)

    @asynccontextmanager
    async def hold(
        self,
        workspace: str,
        holder_id: str,
        operation_kind: str,
        timeout: float | None = None,
    ) -> AsyncIterator[LockHandle]:
        handle = await self.acquire(workspace, holder_id, operation_kind, timeout)
        try:
            yield handle
        finally:
            self.release(handle)

    def _emit(self, type: str, workspace: str, **data):
        if self.event_bus:
            self.event_bus.emit_simple(type, workspace, **data)
