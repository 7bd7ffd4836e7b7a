"""Coordination Store Module.

Provides the watchable key-tree contract and its backends:
- ZooKeeper (kazoo)
- In-memory (development and tests)
"""

from svcwatch.core.coordination.core import (
    ChildrenWatch,
    CoordinationStore,
    join_path,
    node_name,
    parent_path,
)
from svcwatch.core.coordination.kazoo_store import KazooCoordinationStore
from svcwatch.core.coordination.memory import (
    InMemoryCoordinationStore,
    InMemoryCoordinationTree,
)

__all__ = [
    # Core
    "ChildrenWatch",
    "CoordinationStore",
    "join_path",
    "node_name",
    "parent_path",
    # Backends
    "KazooCoordinationStore",
    "InMemoryCoordinationStore",
    "InMemoryCoordinationTree",
]
