"""Service Registry Module.

Provides service discovery over a coordination store:
- Service registration
- Membership snapshot and change watching
- Change subscriptions
"""

from svcwatch.core.service_registry.core import (
    BindAddr,
    ChangeKind,
    ChangeRecord,
    MatchMode,
    ServiceDescriptor,
    ServiceQuery,
    compute_changes,
)
from svcwatch.core.service_registry.registry import (
    ServiceRegistry,
    create_coordination_store,
)
from svcwatch.core.service_registry.router import (
    DeliveryReport,
    Subscription,
    SubscriptionRouter,
)
from svcwatch.core.service_registry.snapshot import ReadWriteLock, Snapshot
from svcwatch.core.service_registry.store import RegistryStore
from svcwatch.core.service_registry.watcher import ChangeWatcher, WatcherState

__all__ = [
    # Core
    "BindAddr",
    "ChangeKind",
    "ChangeRecord",
    "MatchMode",
    "ServiceDescriptor",
    "ServiceQuery",
    "compute_changes",
    # Store
    "RegistryStore",
    # Snapshot
    "ReadWriteLock",
    "Snapshot",
    # Watching and fan-out
    "ChangeWatcher",
    "WatcherState",
    "DeliveryReport",
    "Subscription",
    "SubscriptionRouter",
    # Registry
    "ServiceRegistry",
    "create_coordination_store",
]
