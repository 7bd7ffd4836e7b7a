"""Health Check Implementation.

Reports the health of the change watcher and the coordination session.
"""

from __future__ import annotations

import asyncio
import logging
import socket
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import TYPE_CHECKING, Any, Callable, Dict, List, Optional

if TYPE_CHECKING:
    from svcwatch.core.coordination.core import CoordinationStore
    from svcwatch.core.service_registry.watcher import ChangeWatcher

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class HealthStatus(str, Enum):
    """Health status levels."""

    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNHEALTHY = "unhealthy"
    UNKNOWN = "unknown"


@dataclass
class DependencyHealth:
    """Health status of a dependency."""

    name: str
    status: HealthStatus
    latency_ms: Optional[float] = None
    message: Optional[str] = None
    details: Dict[str, Any] = field(default_factory=dict)
    last_checked: datetime = field(default_factory=_utcnow)
    consecutive_failures: int = 0
    consecutive_successes: int = 0

    @property
    def is_healthy(self) -> bool:
        return self.status == HealthStatus.HEALTHY


@dataclass
class HealthCheckResult:
    """Overall health check result."""

    status: HealthStatus
    timestamp: datetime
    uptime_seconds: float
    dependencies: Dict[str, DependencyHealth]
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            "status": self.status.value,
            "timestamp": self.timestamp.isoformat(),
            "uptime_seconds": self.uptime_seconds,
            "dependencies": {
                name: {
                    "status": dep.status.value,
                    "latency_ms": dep.latency_ms,
                    "message": dep.message,
                    "details": dep.details,
                    "consecutive_failures": dep.consecutive_failures,
                }
                for name, dep in self.dependencies.items()
            },
            "metadata": self.metadata,
        }


class HealthCheck(ABC):
    """Base class for health checks."""

    def __init__(
        self,
        name: str,
        critical: bool = True,
        timeout: float = 5.0,
    ):
        self.name = name
        self.critical = critical  # If critical, failure makes overall status unhealthy
        self.timeout = timeout
        self._last_result: Optional[DependencyHealth] = None

    @abstractmethod
    async def check(self) -> DependencyHealth:
        """Perform health check."""
        pass

    async def execute(self) -> DependencyHealth:
        """Execute health check with timeout."""
        start_time = time.time()
        try:
            result = await asyncio.wait_for(
                self.check(),
                timeout=self.timeout,
            )
        except asyncio.TimeoutError:
            result = DependencyHealth(
                name=self.name,
                status=HealthStatus.UNHEALTHY,
                message=f"Health check timed out after {self.timeout}s",
            )
        except Exception as e:
            result = DependencyHealth(
                name=self.name,
                status=HealthStatus.UNHEALTHY,
                message=f"Health check failed: {str(e)}",
            )

        result.latency_ms = (time.time() - start_time) * 1000

        # Update consecutive counters
        previous = self._last_result
        if result.is_healthy:
            result.consecutive_successes = (previous.consecutive_successes + 1) if previous else 1
            result.consecutive_failures = 0
        else:
            result.consecutive_failures = (previous.consecutive_failures + 1) if previous else 1
            result.consecutive_successes = 0

        self._last_result = result
        return result


class WatcherHealthCheck(HealthCheck):
    """Change watcher state: RECONNECTING is degraded, FATAL is unhealthy."""

    def __init__(self, watcher: "ChangeWatcher", name: str = "watcher", **kwargs: Any):
        super().__init__(name, **kwargs)
        self.watcher = watcher

    async def check(self) -> DependencyHealth:
        from svcwatch.core.service_registry.watcher import WatcherState

        watcher = self.watcher
        state = watcher.state
        details: Dict[str, Any] = {
            "state": state.value,
            "passes": watcher.passes,
            "last_pass_at": watcher.last_pass_at,
            "snapshot_version": watcher.snapshot.version,
            "staleness_seconds": watcher.snapshot.staleness_seconds,
        }
        if watcher.last_error is not None:
            details["last_error"] = str(watcher.last_error)

        if state is WatcherState.WATCHING:
            status, message = HealthStatus.HEALTHY, "Watching membership"
        elif state is WatcherState.RECONNECTING:
            status, message = HealthStatus.DEGRADED, "Reconnecting; serving last-known-good snapshot"
        elif state is WatcherState.FATAL:
            status = HealthStatus.UNHEALTHY
            message = str(watcher.fatal_error) if watcher.fatal_error else "Watcher failed permanently"
        elif state is WatcherState.WARMING:
            status, message = HealthStatus.DEGRADED, "Warming up"
        else:
            status, message = HealthStatus.UNHEALTHY, f"Watcher is {state.value}"

        return DependencyHealth(name=self.name, status=status, message=message, details=details)


class CoordinationHealthCheck(HealthCheck):
    """Coordination session liveness."""

    def __init__(self, store: "CoordinationStore", name: str = "coordination", **kwargs: Any):
        super().__init__(name, **kwargs)
        self.store = store

    async def check(self) -> DependencyHealth:
        details = {"backend": type(self.store).__name__}
        if not self.store.connected:
            return DependencyHealth(
                name=self.name,
                status=HealthStatus.UNHEALTHY,
                message="No coordination session",
                details=details,
            )

        await self.store.exists("/")
        return DependencyHealth(
            name=self.name,
            status=HealthStatus.HEALTHY,
            message="Coordination session live",
            details=details,
        )


class HealthChecker:
    """Central health checker managing all health checks."""

    def __init__(self, service_name: str = "svcwatch"):
        self.service_name = service_name
        self._start_time = time.time()
        self._checks: Dict[str, HealthCheck] = {}
        self._listeners: List[Callable[[HealthCheckResult], Any]] = []
        self._last_result: Optional[HealthCheckResult] = None

    def register(self, check: HealthCheck) -> None:
        """Register a health check."""
        self._checks[check.name] = check
        logger.debug(f"Registered health check: {check.name}")

    def unregister(self, name: str) -> None:
        """Unregister a health check."""
        self._checks.pop(name, None)

    def add_listener(self, listener: Callable[[HealthCheckResult], Any]) -> None:
        """Add listener for health check results."""
        self._listeners.append(listener)

    async def check_all(self) -> HealthCheckResult:
        """Run all health checks."""
        dependencies: Dict[str, DependencyHealth] = {}

        # Run all checks in parallel
        tasks = {
            name: asyncio.create_task(check.execute())
            for name, check in self._checks.items()
        }

        for name, task in tasks.items():
            try:
                dependencies[name] = await task
            except Exception as e:
                dependencies[name] = DependencyHealth(
                    name=name,
                    status=HealthStatus.UNHEALTHY,
                    message=str(e),
                )

        result = HealthCheckResult(
            status=self._compute_overall_status(dependencies),
            timestamp=_utcnow(),
            uptime_seconds=time.time() - self._start_time,
            dependencies=dependencies,
            metadata={
                "service": self.service_name,
                "hostname": socket.gethostname(),
            },
        )

        self._last_result = result

        # Notify listeners
        for listener in self._listeners:
            try:
                if asyncio.iscoroutinefunction(listener):
                    await listener(result)
                else:
                    listener(result)
            except Exception as e:
                logger.error(f"Health listener error: {e}")

        return result

    def _compute_overall_status(
        self,
        dependencies: Dict[str, DependencyHealth],
    ) -> HealthStatus:
        """Compute overall status from dependencies."""
        has_unhealthy_critical = False
        has_degraded = False

        for name, dep in dependencies.items():
            check = self._checks.get(name)
            is_critical = check.critical if check else True

            if dep.status == HealthStatus.UNHEALTHY:
                if is_critical:
                    has_unhealthy_critical = True
                else:
                    has_degraded = True
            elif dep.status == HealthStatus.DEGRADED:
                has_degraded = True

        if has_unhealthy_critical:
            return HealthStatus.UNHEALTHY
        elif has_degraded:
            return HealthStatus.DEGRADED
        else:
            return HealthStatus.HEALTHY

    async def check_readiness(self) -> bool:
        """Readiness check (can the registry answer queries?)."""
        result = await self.check_all()
        return result.status != HealthStatus.UNHEALTHY

    @property
    def last_result(self) -> Optional[HealthCheckResult]:
        """Get last health check result."""
        return self._last_result
