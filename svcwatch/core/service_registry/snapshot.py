"""Membership snapshot.

The locally cached view of "who is currently registered", written only by the
change watcher and read by any number of concurrent queries.
"""

from __future__ import annotations

import asyncio
import time
from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict, Iterable, List, Optional

from svcwatch.core.service_registry.core import (
    ChangeRecord,
    MatchMode,
    ServiceDescriptor,
    ServiceQuery,
    compute_changes,
)


class ReadWriteLock:
    """
    Read-write lock for a single event loop.

    Allows multiple readers or a single writer. Waiting writers block new
    readers so a steady stream of queries cannot starve the watcher.
    """

    def __init__(self) -> None:
        self._readers = 0
        self._writer = False
        self._writers_waiting = 0
        self._cond: Optional[asyncio.Condition] = None

    def _get_cond(self) -> asyncio.Condition:
        if self._cond is None:
            self._cond = asyncio.Condition()
        return self._cond

    @property
    def readers(self) -> int:
        return self._readers

    @property
    def write_locked(self) -> bool:
        return self._writer

    @asynccontextmanager
    async def read(self) -> AsyncIterator[None]:
        cond = self._get_cond()
        async with cond:
            await cond.wait_for(lambda: not self._writer and self._writers_waiting == 0)
            self._readers += 1
        try:
            yield
        finally:
            async with cond:
                self._readers -= 1
                if self._readers == 0:
                    cond.notify_all()

    @asynccontextmanager
    async def write(self) -> AsyncIterator[None]:
        cond = self._get_cond()
        async with cond:
            self._writers_waiting += 1
            try:
                await cond.wait_for(lambda: not self._writer and self._readers == 0)
            finally:
                self._writers_waiting -= 1
            self._writer = True
        try:
            yield
        finally:
            async with cond:
                self._writer = False
                cond.notify_all()


class Snapshot:
    """Concurrency-guarded mapping of instance id to descriptor."""

    def __init__(self, match_mode: MatchMode = MatchMode.ANY):
        self.match_mode = match_mode
        self._instances: Dict[str, ServiceDescriptor] = {}
        self._lock = ReadWriteLock()
        self._version = 0
        self._updated_at: Optional[float] = None

    @property
    def version(self) -> int:
        """Increments on every pass that changed membership."""
        return self._version

    @property
    def updated_at(self) -> Optional[float]:
        """Time of the last successful diff pass."""
        return self._updated_at

    @property
    def staleness_seconds(self) -> Optional[float]:
        if self._updated_at is None:
            return None
        return time.time() - self._updated_at

    async def apply(self, listing: Iterable[ServiceDescriptor]) -> List[ChangeRecord]:
        """Diff a fresh listing against the snapshot and replace it.

        Returns the change batch; after the call the snapshot equals the
        listing exactly.
        """
        current = {descriptor.instance_id: descriptor for descriptor in listing}

        async with self._lock.write():
            changes = compute_changes(self._instances, current)
            self._instances = current
            if changes:
                self._version += 1
            self._updated_at = time.time()

        return changes

    async def get(self, instance_id: str) -> Optional[ServiceDescriptor]:
        async with self._lock.read():
            return self._instances.get(instance_id)

    async def list(self, query: Optional[ServiceQuery] = None) -> List[ServiceDescriptor]:
        async with self._lock.read():
            descriptors = list(self._instances.values())

        if query is None:
            return descriptors
        return [d for d in descriptors if query.matches(d, self.match_mode)]

    async def ids(self) -> List[str]:
        async with self._lock.read():
            return list(self._instances)

    async def size(self) -> int:
        async with self._lock.read():
            return len(self._instances)
