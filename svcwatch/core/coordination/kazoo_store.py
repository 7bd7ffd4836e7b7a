"""ZooKeeper coordination store backed by kazoo.

Kazoo is thread based: blocking calls run in the default executor, and watch /
session callbacks arrive on kazoo's own threads, so they are handed back to the
event loop with ``call_soon_threadsafe``.
"""

from __future__ import annotations

import asyncio
import functools
import logging
import os
from typing import Any, Callable, List, Optional, Set, Tuple

from kazoo.client import KazooClient
from kazoo.exceptions import (
    ConnectionClosedError,
    ConnectionLoss,
    KazooException,
    NodeExistsError,
    NoNodeError,
    NotEmptyError,
    SessionExpiredError,
)
from kazoo.handlers.threading import KazooTimeoutError
from kazoo.protocol.states import EventType, KazooState

from svcwatch.core.coordination.core import ChildrenWatch, CoordinationStore
from svcwatch.core.errors import (
    CoordinationConnectionError,
    CoordinationError,
    InvalidDataError,
    NoSuchPathError,
    PathExistsError,
)

logger = logging.getLogger(__name__)

_CONNECTION_ERRORS = (ConnectionLoss, SessionExpiredError, ConnectionClosedError, KazooTimeoutError)


class KazooCoordinationStore(CoordinationStore):
    """Coordination store over a ZooKeeper ensemble."""

    def __init__(
        self,
        hosts: Optional[str] = None,
        timeout: float = 10.0,
        client: Any = None,
    ):
        self.hosts = hosts or os.getenv("ZK_HOSTS", "127.0.0.1:2181")
        self.timeout = timeout
        self._client = client
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._pending: Set[ChildrenWatch] = set()
        self._listener_added = False
        self._started = False
        self._session_lost = False

    def _get_client(self) -> Any:
        if self._client is None:
            self._client = KazooClient(hosts=self.hosts, timeout=self.timeout)
        if not self._listener_added:
            self._client.add_listener(self._on_state_change)
            self._listener_added = True
        return self._client

    @property
    def connected(self) -> bool:
        return self._client is not None and bool(self._client.connected)

    async def _call(self, func: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
        """Run a blocking kazoo call and translate its errors."""
        loop = asyncio.get_running_loop()
        path = args[0] if args and isinstance(args[0], str) else None
        try:
            return await loop.run_in_executor(None, functools.partial(func, *args, **kwargs))
        except NodeExistsError as e:
            raise PathExistsError(f"Path already exists: {path}", path=path) from e
        except NoNodeError as e:
            raise NoSuchPathError(f"No such path: {path}", path=path) from e
        except NotEmptyError as e:
            raise CoordinationError(f"Node not empty: {path}", path=path) from e
        except _CONNECTION_ERRORS as e:
            raise CoordinationConnectionError(f"ZooKeeper connection error: {e!r}", path=path) from e
        except KazooException as e:
            raise CoordinationError(f"ZooKeeper error: {e!r}", path=path) from e

    async def connect(self) -> None:
        self._loop = asyncio.get_running_loop()
        client = self._get_client()
        if client.connected:
            self._started = True
            return
        await self._call(client.start, self.timeout)
        self._started = True
        self._session_lost = False
        logger.info(f"Connected to ZooKeeper at {self.hosts}")

    async def reconnect(self) -> None:
        """Wait for kazoo to resume the session; restart the client only once it is gone.

        While SUSPENDED, kazoo reconnects by itself and the session (with its
        ephemeral nodes) survives. Stopping the client then would close it.
        """
        client = self._get_client()
        if client.connected:
            return
        if self._started and not self._session_lost:
            if await self._wait_connected(self.timeout):
                logger.info("ZooKeeper connection resumed")
                return
            # Past the session timeout the ensemble has expired the session anyway
            logger.warning(f"ZooKeeper did not resume within {self.timeout}s")

        logger.info(f"Restarting ZooKeeper client for {self.hosts}")
        await self._call(client.stop)
        self._started = False
        await self.connect()

    async def _wait_connected(self, timeout: float, interval: float = 0.1) -> bool:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while loop.time() < deadline:
            if self._session_lost:
                return False
            if self._get_client().connected:
                return True
            await asyncio.sleep(interval)
        return bool(self._get_client().connected)

    async def close(self) -> None:
        self._fail_pending(CoordinationConnectionError("Session closed"))
        self._started = False
        if self._client is None:
            return
        await self._call(self._client.stop)
        await self._call(self._client.close)
        logger.info("ZooKeeper session closed")

    async def create(self, path: str, value: str = "", ephemeral: bool = False) -> str:
        return await self._call(self._get_client().create, path, value.encode("utf-8"), ephemeral=ephemeral)

    async def set(self, path: str, value: str) -> None:
        await self._call(self._get_client().set, path, value.encode("utf-8"))

    async def get(self, path: str) -> str:
        data, _stat = await self._call(self._get_client().get, path)
        if not data:
            return ""
        try:
            return data.decode("utf-8")
        except UnicodeDecodeError as e:
            raise InvalidDataError(f"Value of {path} is not utf-8 text", path=path) from e

    async def children(self, path: str) -> List[str]:
        return list(await self._call(self._get_client().get_children, path))

    async def exists(self, path: str) -> bool:
        return await self._call(self._get_client().exists, path) is not None

    async def delete(self, path: str, recursive: bool = False) -> None:
        await self._call(self._get_client().delete, path, recursive=recursive)

    async def watch_children(self, path: str) -> Tuple[List[str], ChildrenWatch]:
        watch = ChildrenWatch(path)
        self._pending.add(watch)

        def on_event(event: Any) -> None:
            if getattr(event, "type", None) == EventType.NONE:
                error = CoordinationConnectionError(f"Session event while watching {path}: {event!r}")
                watch.loop.call_soon_threadsafe(self._settle, watch, error)
            else:
                watch.loop.call_soon_threadsafe(self._settle, watch, None)

        try:
            names = await self._call(self._get_client().get_children, path, watch=on_event)
        except CoordinationError:
            self._pending.discard(watch)
            watch.cancel()
            raise
        return list(names), watch

    def _settle(self, watch: ChildrenWatch, error: Optional[BaseException]) -> None:
        self._pending.discard(watch)
        if error is None:
            watch.fire()
        else:
            watch.fail(error)

    def _fail_pending(self, error: BaseException) -> None:
        pending, self._pending = self._pending, set()
        for watch in pending:
            watch.fail(error)

    def _on_state_change(self, state: Any) -> None:
        """Kazoo session listener (runs on a kazoo thread)."""
        if state == KazooState.LOST:
            self._session_lost = True
            logger.warning("ZooKeeper session lost")
            if self._loop is not None and not self._loop.is_closed():
                self._loop.call_soon_threadsafe(
                    self._fail_pending,
                    CoordinationConnectionError("ZooKeeper session lost"),
                )
        elif state == KazooState.SUSPENDED:
            logger.warning("ZooKeeper connection suspended")
        else:
            self._session_lost = False
            logger.info("ZooKeeper connection established")
