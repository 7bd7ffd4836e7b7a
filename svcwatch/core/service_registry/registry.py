"""Service Registry Implementation.

Ties the registry store, snapshot, watcher and router together behind one
object owned by the caller:
- Registration of local instances
- Snapshot-backed (or fresh) membership queries
- Change subscriptions
- Health reporting
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional, Set

from svcwatch.core.config import Settings, get_settings
from svcwatch.core.coordination.core import CoordinationStore
from svcwatch.core.coordination.kazoo_store import KazooCoordinationStore
from svcwatch.core.coordination.memory import InMemoryCoordinationStore
from svcwatch.core.errors import CoordinationError, RegistrationConflict, RegistryError
from svcwatch.core.health.checker import (
    CoordinationHealthCheck,
    HealthChecker,
    HealthCheckResult,
    WatcherHealthCheck,
)
from svcwatch.core.resilience.retry import RetryConfig
from svcwatch.core.service_registry.core import MatchMode, ServiceDescriptor, ServiceQuery
from svcwatch.core.service_registry.router import Subscription, SubscriptionRouter
from svcwatch.core.service_registry.snapshot import Snapshot
from svcwatch.core.service_registry.store import RegistryStore
from svcwatch.core.service_registry.watcher import ChangeWatcher, WatcherState

logger = logging.getLogger(__name__)


def create_coordination_store(settings: Settings) -> CoordinationStore:
    """Build the coordination backend named by ``COORDINATION_BACKEND``."""
    backend = settings.COORDINATION_BACKEND.lower()
    if backend == "zookeeper":
        return KazooCoordinationStore(hosts=settings.ZK_HOSTS, timeout=settings.ZK_TIMEOUT_SECONDS)
    if backend == "memory":
        return InMemoryCoordinationStore()
    raise ValueError(f"Unknown COORDINATION_BACKEND: {settings.COORDINATION_BACKEND!r}")


class ServiceRegistry:
    """Service registry over a coordination store."""

    def __init__(
        self,
        coordination: CoordinationStore,
        settings: Optional[Settings] = None,
        retry_config: Optional[RetryConfig] = None,
    ):
        self.settings = settings or get_settings()
        self.match_mode = MatchMode(self.settings.QUERY_MATCH_MODE.lower())

        self.coordination = coordination
        self.store = RegistryStore(coordination, self.match_mode)
        self.snapshot = Snapshot(self.match_mode)
        self.router = SubscriptionRouter(self.settings.SUBSCRIBER_BUFFER_SIZE, self.match_mode)
        self.watcher = ChangeWatcher(
            self.store,
            self.snapshot,
            self.router,
            retry_config or RetryConfig.from_settings(self.settings),
        )
        self.watcher.add_state_listener(self._on_watcher_state)

        self.health_checker = HealthChecker(self.settings.SERVICE_NAME)
        self.health_checker.register(WatcherHealthCheck(self.watcher))
        # Session loss alone is recoverable; the watcher check decides criticality
        self.health_checker.register(CoordinationHealthCheck(coordination, critical=False))

        self._local: Dict[str, ServiceDescriptor] = {}
        self._active: Set[str] = set()
        self._started = False

    @classmethod
    def from_settings(cls, settings: Optional[Settings] = None) -> "ServiceRegistry":
        settings = settings or get_settings()
        return cls(create_coordination_store(settings), settings)

    @property
    def state(self) -> WatcherState:
        return self.watcher.state

    @property
    def is_live(self) -> bool:
        return self.watcher.is_live

    @property
    def local_instances(self) -> List[ServiceDescriptor]:
        """Descriptors registered through this registry."""
        return list(self._local.values())

    async def start(self) -> None:
        """Connect, ensure the layout exists and warm up the watcher."""
        if self._started:
            return

        connect_retry = RetryConfig(
            max_attempts=self.settings.CONNECT_MAX_ATTEMPTS,
            min_wait=self.settings.RECONNECT_MIN_WAIT_SECONDS,
            max_wait=self.settings.RECONNECT_MAX_WAIT_SECONDS,
            retry_exceptions=(ConnectionError,),
        )
        async for attempt in connect_retry.async_retrying(logger):
            with attempt:
                await self.coordination.connect()

        await self.store.bootstrap()
        await self.watcher.start()
        self._started = True
        logger.info(f"Service registry started ({type(self.coordination).__name__})")

    async def stop(self) -> None:
        """Stop watching, close subscriptions, withdraw local instances."""
        await self.watcher.stop()
        await self.router.close_all()

        if self.coordination.connected:
            for instance_id in list(self._local):
                try:
                    await self.store.deregister(instance_id)
                except CoordinationError as e:
                    logger.warning(f"Could not deregister {instance_id} on stop: {e}")
        self._local.clear()
        self._active.clear()

        await self.coordination.close()
        self._started = False
        logger.info("Service registry stopped")

    async def __aenter__(self) -> "ServiceRegistry":
        await self.start()
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.stop()

    # Registration

    async def register(self, descriptor: ServiceDescriptor, active: bool = False) -> None:
        await self.store.register(descriptor)
        self._local[descriptor.instance_id] = descriptor
        if active:
            await self.set_active(descriptor.instance_id, True)

    async def deregister(self, instance_id: str) -> ServiceDescriptor:
        descriptor = await self.store.deregister(instance_id)
        self._local.pop(instance_id, None)
        self._active.discard(instance_id)
        return descriptor

    async def set_active(self, instance_id: str, active: bool) -> None:
        await self.store.set_active(instance_id, active)
        if active:
            self._active.add(instance_id)
        else:
            self._active.discard(instance_id)

    async def is_active(self, instance_id: str) -> bool:
        return await self.store.is_active(instance_id)

    async def update(self, descriptor: ServiceDescriptor) -> ServiceDescriptor:
        previous = await self.store.update(descriptor)
        if descriptor.instance_id in self._local:
            self._local[descriptor.instance_id] = descriptor
        return previous

    # Queries

    async def list_instances(
        self,
        query: Optional[ServiceQuery] = None,
        fresh: bool = False,
    ) -> List[ServiceDescriptor]:
        """Matching instances from the Snapshot, or from the store when ``fresh``."""
        if fresh:
            return await self.store.list_instances(query)
        return await self.snapshot.list(query)

    async def get_instance(self, instance_id: str, fresh: bool = False) -> Optional[ServiceDescriptor]:
        if fresh:
            return await self.store.read_instance(instance_id)
        return await self.snapshot.get(instance_id)

    async def list_services(self) -> List[str]:
        return await self.store.list_services()

    async def list_regions(self) -> List[str]:
        return await self.store.list_regions()

    async def list_hosts(self) -> List[str]:
        return await self.store.list_hosts()

    # Subscriptions

    async def subscribe(
        self,
        query: Optional[ServiceQuery] = None,
        buffer_size: Optional[int] = None,
    ) -> Subscription:
        return await self.router.subscribe(query, buffer_size)

    async def unsubscribe(self, subscription: Subscription) -> None:
        await self.router.unsubscribe(subscription)

    # Health

    async def health(self) -> HealthCheckResult:
        return await self.health_checker.check_all()

    def _on_watcher_state(self, old: WatcherState, new: WatcherState) -> Any:
        if (
            old is WatcherState.RECONNECTING
            and new is WatcherState.WATCHING
            and self.settings.REREGISTER_ON_RECONNECT
            and self._local
        ):
            return self._reregister_local()
        return None

    async def _reregister_local(self) -> None:
        """Restore local registrations whose ephemeral nodes died with a session."""
        for descriptor in list(self._local.values()):
            try:
                await self.store.register(descriptor)
            except RegistrationConflict:
                # Still present; the old session survived
                continue
            except (CoordinationError, RegistryError) as e:
                logger.error(f"Re-registration of {descriptor.instance_id} failed: {e}")
                continue

            if descriptor.instance_id in self._active:
                await self.store.set_active(descriptor.instance_id, True)
            logger.info(f"Re-registered {descriptor.instance_id} after reconnect")
