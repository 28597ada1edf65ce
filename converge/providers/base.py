"""Base provider — abstract interface every resource provider implements."""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod

from converge.models import ResourceNode, StateEntry

logger = logging.getLogger(__name__)


class ResourceProvider(ABC):
    """Performs CRUD against one family of live resources on behalf of the engine.

    Providers own their timeouts; the engine never retries a call on their behalf.
    Returned entries only need ``applied_attributes`` and ``provider_id`` filled in;
    the executor stamps address, dependencies, lifecycle and timestamps.
    """

    name: str = ""
    schema_version: int = 0

    @abstractmethod
    async def create(self, node: ResourceNode) -> StateEntry:
        """Create the live resource described by a fully-resolved node."""

    @abstractmethod
    async def read(self, entry: StateEntry) -> StateEntry | None:
        """Return the live view of ``entry``, or None if it no longer exists."""

    @abstractmethod
    async def update(self, entry: StateEntry, node: ResourceNode) -> StateEntry:
        """Bring the live resource in line with ``node`` without replacing it."""

    @abstractmethod
    async def destroy(self, entry: StateEntry) -> None:
        """Delete the live resource. Deleting something already gone is not an error."""

    async def diff(self, entry: StateEntry, node: ResourceNode) -> bool:
        """True if moving from ``entry`` to ``node`` requires replacement.

        ``node`` may still carry unresolved references at plan time.
        """
        return False
