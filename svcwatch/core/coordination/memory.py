"""In-memory coordination store.

Models the parts of ZooKeeper semantics the registry relies on, for
development and tests:
- Sessions owning ephemeral nodes
- One-shot children watches
- Session expiry and connection refusal
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Dict, Iterator, List, Optional, Set, Tuple

from svcwatch.core.coordination.core import (
    ChildrenWatch,
    CoordinationStore,
    join_path,
    node_name,
    parent_path,
)
from svcwatch.core.errors import (
    CoordinationConnectionError,
    CoordinationError,
    NoSuchPathError,
    PathExistsError,
)

logger = logging.getLogger(__name__)


@dataclass
class _Node:
    value: str = ""
    ephemeral_owner: Optional[int] = None
    children: Dict[str, "_Node"] = field(default_factory=dict)


class InMemoryCoordinationTree:
    """Shared state of one simulated ensemble.

    Several ``InMemoryCoordinationStore`` clients attached to the same tree see
    each other's writes, the way separate processes share a ZooKeeper cluster.
    """

    def __init__(self) -> None:
        self._root = _Node()
        self._next_session = 0
        self._sessions: Set[int] = set()
        # path -> [(owning session, watch)]
        self._watches: Dict[str, List[Tuple[int, ChildrenWatch]]] = {}
        self.accepting_connections = True

    # Sessions

    def open_session(self) -> int:
        if not self.accepting_connections:
            raise CoordinationConnectionError("Connection refused by coordination store")
        self._next_session += 1
        self._sessions.add(self._next_session)
        logger.debug(f"Session {self._next_session} opened")
        return self._next_session

    def is_live(self, session_id: Optional[int]) -> bool:
        return session_id is not None and session_id in self._sessions

    def end_session(self, session_id: int, reason: str = "closed") -> None:
        """End a session: drop its ephemeral nodes and fail its watches."""
        if session_id not in self._sessions:
            return
        self._sessions.discard(session_id)

        error = CoordinationConnectionError(f"Session {session_id} {reason}")
        for path in list(self._watches):
            remaining = []
            for owner, watch in self._watches[path]:
                if owner == session_id:
                    watch.fail(error)
                else:
                    remaining.append((owner, watch))
            if remaining:
                self._watches[path] = remaining
            else:
                del self._watches[path]

        owned = [path for path, node in self._walk("/", self._root) if node.ephemeral_owner == session_id]
        for path in owned:
            if self._lookup(path) is not None:
                self._remove(path)

        logger.debug(f"Session {session_id} {reason}; removed {len(owned)} ephemeral node(s)")

    @property
    def session_count(self) -> int:
        return len(self._sessions)

    # Nodes

    def _walk(self, path: str, node: _Node) -> Iterator[Tuple[str, _Node]]:
        for name, child in node.children.items():
            child_path = join_path(path, name)
            yield child_path, child
            yield from self._walk(child_path, child)

    def _lookup(self, path: str) -> Optional[_Node]:
        node = self._root
        for part in path.split("/"):
            if not part:
                continue
            node = node.children.get(part)
            if node is None:
                return None
        return node

    def _require(self, path: str) -> _Node:
        node = self._lookup(path)
        if node is None:
            raise NoSuchPathError(f"No such path: {path}", path=path)
        return node

    def create(self, session_id: int, path: str, value: str, ephemeral: bool) -> str:
        if path in ("", "/"):
            raise PathExistsError("Root node always exists", path="/")

        parent = self._require(parent_path(path))
        if parent.ephemeral_owner is not None:
            raise CoordinationError(f"Ephemeral node {parent_path(path)} cannot have children", path=path)

        name = node_name(path)
        if name in parent.children:
            raise PathExistsError(f"Path already exists: {path}", path=path)

        parent.children[name] = _Node(
            value=value,
            ephemeral_owner=session_id if ephemeral else None,
        )
        self._fire(parent_path(path))
        return path

    def set(self, path: str, value: str) -> None:
        self._require(path).value = value

    def get(self, path: str) -> str:
        return self._require(path).value

    def children(self, path: str) -> List[str]:
        return sorted(self._require(path).children)

    def exists(self, path: str) -> bool:
        return self._lookup(path) is not None

    def delete(self, path: str, recursive: bool = False) -> None:
        node = self._require(path)
        if path in ("", "/"):
            raise CoordinationError("Cannot delete root node", path="/")
        if node.children and not recursive:
            raise CoordinationError(f"Node not empty: {path}", path=path)
        self._remove(path)

    def _remove(self, path: str) -> None:
        node = self._require(path)
        for name in list(node.children):
            self._remove(join_path(path, name))

        parent = self._require(parent_path(path))
        del parent.children[node_name(path)]
        # A deleted node fires watches on itself and on its parent
        self._fire(path)
        self._fire(parent_path(path))

    # Watches

    def add_watch(self, session_id: int, watch: ChildrenWatch) -> None:
        # Drop watches their owners already cancelled
        pending = [entry for entry in self._watches.get(watch.path, []) if not entry[1].done]
        pending.append((session_id, watch))
        self._watches[watch.path] = pending

    def _fire(self, path: str) -> None:
        for _, watch in self._watches.pop(path, []):
            watch.fire()

    def pending_watches(self, path: str) -> int:
        return sum(1 for _, watch in self._watches.get(path, []) if not watch.done)


class InMemoryCoordinationStore(CoordinationStore):
    """A client session against an ``InMemoryCoordinationTree``."""

    def __init__(self, tree: Optional[InMemoryCoordinationTree] = None):
        self.tree = tree or InMemoryCoordinationTree()
        self._session_id: Optional[int] = None

    @property
    def connected(self) -> bool:
        return self.tree.is_live(self._session_id)

    @property
    def session_id(self) -> Optional[int]:
        return self._session_id if self.connected else None

    async def connect(self) -> None:
        if self.connected:
            return
        self._session_id = self.tree.open_session()

    async def reconnect(self) -> None:
        await self.connect()

    async def close(self) -> None:
        if self._session_id is not None:
            self.tree.end_session(self._session_id, "closed")
        self._session_id = None

    def expire_session(self) -> None:
        """Simulate the ensemble expiring this client's session."""
        if self._session_id is not None:
            self.tree.end_session(self._session_id, "expired")

    def _session(self) -> int:
        if not self.connected:
            raise CoordinationConnectionError("Not connected to coordination store")
        return self._session_id  # type: ignore[return-value]

    async def create(self, path: str, value: str = "", ephemeral: bool = False) -> str:
        return self.tree.create(self._session(), path, value, ephemeral)

    async def set(self, path: str, value: str) -> None:
        self._session()
        self.tree.set(path, value)

    async def get(self, path: str) -> str:
        self._session()
        return self.tree.get(path)

    async def children(self, path: str) -> List[str]:
        self._session()
        return self.tree.children(path)

    async def exists(self, path: str) -> bool:
        self._session()
        return self.tree.exists(path)

    async def delete(self, path: str, recursive: bool = False) -> None:
        self._session()
        self.tree.delete(path, recursive=recursive)

    async def watch_children(self, path: str) -> Tuple[List[str], ChildrenWatch]:
        session_id = self._session()
        names = self.tree.children(path)
        watch = ChildrenWatch(path)
        self.tree.add_watch(session_id, watch)
        return names, watch
