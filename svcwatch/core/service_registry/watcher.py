"""Change Watcher.

Keeps the membership Snapshot in step with the coordination store. One watcher
task is the only Snapshot writer: each notification triggers a full listing,
a diff against the Snapshot, and delivery of the resulting batch.
"""

from __future__ import annotations

import asyncio
import logging
import time
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Set

from svcwatch.core.coordination.core import ChildrenWatch
from svcwatch.core.errors import (
    CoordinationConnectionError,
    CoordinationError,
    NoSuchPathError,
    WatcherFatalError,
)
from svcwatch.core.logging.structured import get_logger
from svcwatch.core.resilience.retry import RetryConfig
from svcwatch.core.service_registry.core import ChangeKind, ChangeRecord
from svcwatch.core.service_registry.router import SubscriptionRouter
from svcwatch.core.service_registry.snapshot import Snapshot
from svcwatch.core.service_registry.store import INSTANCES_PATH, RegistryStore, instance_path
from svcwatch.utils.metrics import (
    watcher_changes_total,
    watcher_diff_passes_total,
    watcher_pass_duration_seconds,
    watcher_reconnects_total,
    watcher_snapshot_size,
    watcher_state,
)

logger = logging.getLogger(__name__)


class WatcherState(Enum):
    """Watcher lifecycle."""
    IDLE = "idle"
    WARMING = "warming"
    WATCHING = "watching"
    RECONNECTING = "reconnecting"
    FATAL = "fatal"
    STOPPED = "stopped"


StateListener = Callable[[WatcherState, WatcherState], Any]


class ChangeWatcher:
    """Watches ``/instances`` and each instance branch, diffing on every change."""

    def __init__(
        self,
        store: RegistryStore,
        snapshot: Snapshot,
        router: SubscriptionRouter,
        retry_config: Optional[RetryConfig] = None,
        stop_timeout: float = 5.0,
        error_backoff: float = 1.0,
    ):
        self.store = store
        self.snapshot = snapshot
        self.router = router
        self.retry_config = retry_config or RetryConfig(
            max_attempts=5,
            min_wait=0.5,
            max_wait=30.0,
            retry_exceptions=(ConnectionError,),
        )
        self.stop_timeout = stop_timeout
        self.error_backoff = error_backoff

        self._state = WatcherState.IDLE
        self._task: Optional[asyncio.Task] = None
        self._stop_event: Optional[asyncio.Event] = None
        self._ready: Optional[asyncio.Event] = None
        self._watches: Dict[str, ChildrenWatch] = {}
        self._listeners: List[StateListener] = []
        self._listener_tasks: Set[asyncio.Task] = set()

        self.passes = 0
        self.last_pass_at: Optional[float] = None
        self.last_error: Optional[BaseException] = None
        self.fatal_error: Optional[WatcherFatalError] = None
        self._log = get_logger(__name__)

    @property
    def state(self) -> WatcherState:
        return self._state

    @property
    def is_live(self) -> bool:
        return self._state in (WatcherState.WARMING, WatcherState.WATCHING, WatcherState.RECONNECTING)

    def add_state_listener(self, listener: StateListener) -> None:
        """Call ``listener(old, new)`` on every state transition.

        Coroutine listeners are scheduled as tasks.
        """
        self._listeners.append(listener)

    def _set_state(self, state: WatcherState) -> None:
        old = self._state
        if old is state:
            return
        self._state = state
        watcher_state.labels(state=old.value).set(0)
        watcher_state.labels(state=state.value).set(1)
        logger.info(f"Watcher state {old.value} -> {state.value}")

        for listener in list(self._listeners):
            try:
                result = listener(old, state)
                if asyncio.iscoroutine(result):
                    task = asyncio.ensure_future(result)
                    self._listener_tasks.add(task)
                    task.add_done_callback(self._listener_done)
            except Exception as e:
                logger.error(f"Watcher state listener error: {e}")

    def _listener_done(self, task: asyncio.Task) -> None:
        self._listener_tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error(f"Watcher state listener error: {task.exception()}")

    async def start(self) -> None:
        """Start watching; returns once the warm-up pass has been delivered.

        Raises:
            WatcherFatalError: The store could not be reached during warm-up.
        """
        if self._task is not None and not self._task.done():
            return

        self._stop_event = asyncio.Event()
        self._ready = asyncio.Event()
        self._set_state(WatcherState.WARMING)
        self._task = asyncio.create_task(self._run())

        ready = asyncio.ensure_future(self._ready.wait())
        try:
            await asyncio.wait({ready, self._task}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            if not ready.done():
                ready.cancel()

        if self._state is WatcherState.FATAL and self.fatal_error is not None:
            raise self.fatal_error

    async def stop(self) -> None:
        """Stop the watch loop; outstanding watches are discarded."""
        if self._task is None:
            self._set_state(WatcherState.STOPPED)
            return

        assert self._stop_event is not None
        self._stop_event.set()

        if not self._task.done():
            done, _ = await asyncio.wait({self._task}, timeout=self.stop_timeout)
            if not done:
                self._task.cancel()
                try:
                    await self._task
                except asyncio.CancelledError:
                    pass

        self._task = None
        self._reset_watches()
        if self._state is not WatcherState.FATAL:
            self._set_state(WatcherState.STOPPED)

    @property
    def _stopping(self) -> bool:
        return self._stop_event is not None and self._stop_event.is_set()

    async def _run(self) -> None:
        try:
            await self._watch_loop()
        except Exception as e:
            watcher_diff_passes_total.labels(status="error").inc()
            self._go_fatal(e, f"Watcher failed unexpectedly: {e!r}", "Watcher crashed; snapshot is last-known-good")

    async def _watch_loop(self) -> None:
        needs_reconnect = False

        while not self._stopping:
            if needs_reconnect:
                if not await self._reconnect():
                    return
                needs_reconnect = False

            try:
                await self._arm_watches()
                await self._diff_pass()
            except CoordinationConnectionError as e:
                needs_reconnect = self._connection_lost(e)
                continue
            except CoordinationError as e:
                # Not a session problem; retry the pass after a pause
                self.last_error = e
                watcher_diff_passes_total.labels(status="error").inc()
                logger.error(f"Diff pass failed: {e}")
                await self._sleep_or_stop(self.error_backoff)
                continue

            if self._stopping:
                break

            self._set_state(WatcherState.WATCHING)
            assert self._ready is not None
            self._ready.set()

            try:
                changed = await self._wait_for_change()
            except CoordinationConnectionError as e:
                needs_reconnect = self._connection_lost(e)
                continue

            if not changed:
                break

    def _connection_lost(self, error: CoordinationConnectionError) -> bool:
        self.last_error = error
        watcher_diff_passes_total.labels(status="disconnected").inc()
        self._log.warning("Coordination session lost", error=str(error))
        self._reset_watches()
        if self._stopping:
            return False
        self._set_state(WatcherState.RECONNECTING)
        return True

    async def _arm_watches(self) -> None:
        """Ensure a pending watch on ``/instances`` and on every instance branch."""
        coordination = self.store.coordination

        root = self._watches.get(INSTANCES_PATH)
        if root is None or root.done:
            self._discard(INSTANCES_PATH)
            names, self._watches[INSTANCES_PATH] = await coordination.watch_children(INSTANCES_PATH)
        else:
            names = await coordination.children(INSTANCES_PATH)

        wanted = {INSTANCES_PATH} | {instance_path(name) for name in names}
        for path in list(self._watches):
            if path not in wanted:
                self._discard(path)

        for name in names:
            path = instance_path(name)
            watch = self._watches.get(path)
            if watch is not None and not watch.done:
                continue
            self._discard(path)
            try:
                _, self._watches[path] = await coordination.watch_children(path)
            except NoSuchPathError:
                # Branch removed since listing; the /instances watch covers it
                continue

    def _discard(self, path: str) -> None:
        watch = self._watches.pop(path, None)
        if watch is None:
            return
        future = watch.as_future()
        if future.done() and not future.cancelled():
            future.exception()
        watch.cancel()

    def _reset_watches(self) -> None:
        for path in list(self._watches):
            self._discard(path)

    async def _wait_for_change(self) -> bool:
        """Block until a watch resolves (True) or stop is requested (False)."""
        assert self._stop_event is not None
        stop_wait = asyncio.ensure_future(self._stop_event.wait())
        futures = {watch.as_future() for watch in self._watches.values()}

        try:
            done, _ = await asyncio.wait({stop_wait, *futures}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            if not stop_wait.done():
                stop_wait.cancel()

        if self._stopping:
            return False

        for future in done:
            if future is stop_wait or future.cancelled():
                continue
            error = future.exception()
            if error is not None:
                raise error
        return True

    async def _diff_pass(self) -> List[ChangeRecord]:
        """List, diff against the Snapshot and deliver the batch."""
        started = time.perf_counter()

        listing = await self.store.list_instances()
        if self._stopping:
            return []

        changes = await self.snapshot.apply(listing)
        report = await self.router.deliver(changes)

        duration = time.perf_counter() - started
        size = await self.snapshot.size()
        self.passes += 1
        self.last_pass_at = time.time()

        watcher_diff_passes_total.labels(status="ok").inc()
        watcher_pass_duration_seconds.observe(duration)
        watcher_snapshot_size.set(size)

        added = sum(1 for c in changes if c.kind is ChangeKind.ADDED)
        removed = len(changes) - added
        if added:
            watcher_changes_total.labels(kind=ChangeKind.ADDED.value).inc(added)
        if removed:
            watcher_changes_total.labels(kind=ChangeKind.REMOVED.value).inc(removed)

        if changes:
            self._log.info(
                "Membership changed",
                added=added,
                removed=removed,
                size=size,
                subscribers=report.subscribers,
                dropped=report.dropped,
                duration_ms=round(duration * 1000, 2),
            )
        else:
            self._log.debug("Diff pass without changes", size=size, pass_number=self.passes)

        return changes

    async def _reconnect(self) -> bool:
        """Re-establish the session with backoff; False once FATAL or stopping."""
        coordination = self.store.coordination
        try:
            async for attempt in self.retry_config.async_retrying(logger):
                with attempt:
                    if self._stopping:
                        return False
                    await coordination.reconnect()
                    await self.store.bootstrap()
        except (ConnectionError, CoordinationError) as e:
            watcher_reconnects_total.labels(outcome="failed").inc()
            self._go_fatal(
                e,
                f"Could not re-establish coordination session after "
                f"{self.retry_config.max_attempts} attempt(s): {e}",
                "Watcher giving up; snapshot is last-known-good",
                attempts=self.retry_config.max_attempts,
            )
            return False

        watcher_reconnects_total.labels(outcome="success").inc()
        logger.info("Coordination session re-established; resynchronizing")
        return True

    def _go_fatal(self, error: BaseException, message: str, log_message: str, **fields: Any) -> None:
        """Record ``error``, enter FATAL and release anyone waiting in ``start``."""
        self._reset_watches()
        self.last_error = error
        self.fatal_error = WatcherFatalError(message)
        self.fatal_error.__cause__ = error
        self._log.critical(log_message, error=str(error), **fields)
        self._set_state(WatcherState.FATAL)
        if self._ready is not None:
            self._ready.set()

    async def _sleep_or_stop(self, delay: float) -> None:
        assert self._stop_event is not None
        try:
            await asyncio.wait_for(self._stop_event.wait(), delay)
        except asyncio.TimeoutError:
            pass
