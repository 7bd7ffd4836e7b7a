"""Coordination Store Core.

Provides the contract the registry needs from a watchable key tree:
- Node CRUD with ephemeral nodes
- One-shot children watches
- Session connect / reconnect
"""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import List, Optional, Tuple

from svcwatch.core.errors import PathExistsError

logger = logging.getLogger(__name__)


def join_path(*parts: str) -> str:
    """Join path segments into an absolute node path."""
    segments = [p.strip("/") for p in parts if p and p.strip("/")]
    return "/" + "/".join(segments)


def parent_path(path: str) -> str:
    """Return the parent of an absolute node path ("/" for top-level nodes)."""
    head, _, _ = path.rstrip("/").rpartition("/")
    return head or "/"


def node_name(path: str) -> str:
    return path.rstrip("/").rpartition("/")[2]


class ChildrenWatch:
    """One-shot notification that the children of ``path`` changed.

    Resolves at most once. A lost session fails the watch with
    ``CoordinationConnectionError``.
    """

    def __init__(self, path: str, loop: Optional[asyncio.AbstractEventLoop] = None):
        self.path = path
        self._loop = loop or asyncio.get_running_loop()
        self._future: asyncio.Future = self._loop.create_future()

    @property
    def loop(self) -> asyncio.AbstractEventLoop:
        return self._loop

    @property
    def done(self) -> bool:
        return self._future.done()

    @property
    def fired(self) -> bool:
        return (
            self._future.done()
            and not self._future.cancelled()
            and self._future.exception() is None
        )

    def fire(self) -> None:
        if not self._future.done():
            self._future.set_result(self.path)

    def fail(self, error: BaseException) -> None:
        if not self._future.done():
            self._future.set_exception(error)

    def cancel(self) -> None:
        self._future.cancel()

    async def wait(self) -> str:
        """Wait for the change; returns the watched path."""
        return await self._future

    def as_future(self) -> asyncio.Future:
        return self._future

    def __repr__(self) -> str:
        state = "fired" if self.fired else ("done" if self.done else "pending")
        return f"ChildrenWatch(path={self.path!r}, {state})"


class CoordinationStore(ABC):
    """Abstract watchable, linearizable key tree."""

    @property
    @abstractmethod
    def connected(self) -> bool:
        """Whether a live session exists."""
        pass

    @abstractmethod
    async def connect(self) -> None:
        """Open a session."""
        pass

    @abstractmethod
    async def reconnect(self) -> None:
        """Re-establish a session after it was lost."""
        pass

    @abstractmethod
    async def close(self) -> None:
        """Close the session; ephemeral nodes it owns are removed."""
        pass

    @abstractmethod
    async def create(self, path: str, value: str = "", ephemeral: bool = False) -> str:
        """Create a node. Parent must exist."""
        pass

    @abstractmethod
    async def set(self, path: str, value: str) -> None:
        """Overwrite the value of an existing node."""
        pass

    @abstractmethod
    async def get(self, path: str) -> str:
        """Read the value of a node."""
        pass

    @abstractmethod
    async def children(self, path: str) -> List[str]:
        """List child names of a node."""
        pass

    @abstractmethod
    async def exists(self, path: str) -> bool:
        """Check if a node exists."""
        pass

    @abstractmethod
    async def delete(self, path: str, recursive: bool = False) -> None:
        """Delete a node (and its subtree when ``recursive``)."""
        pass

    @abstractmethod
    async def watch_children(self, path: str) -> Tuple[List[str], ChildrenWatch]:
        """List children of ``path`` and arm a one-shot watch on them."""
        pass

    async def ensure_path(self, path: str) -> None:
        """Create every missing persistent node along ``path``."""
        current = ""
        for part in path.split("/"):
            if not part:
                continue
            current = f"{current}/{part}"

            if await self.exists(current):
                continue

            logger.debug(f"Creating path: {current}")
            try:
                await self.create(current)
            except PathExistsError:
                # Created concurrently by another client
                continue
