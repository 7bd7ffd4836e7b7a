"""Health checks for the registry.

Provides:
- Watcher state checks
- Coordination session checks
"""

from svcwatch.core.health.checker import (
    CoordinationHealthCheck,
    DependencyHealth,
    HealthCheck,
    HealthChecker,
    HealthCheckResult,
    HealthStatus,
    WatcherHealthCheck,
)

__all__ = [
    "CoordinationHealthCheck",
    "DependencyHealth",
    "HealthCheck",
    "HealthChecker",
    "HealthCheckResult",
    "HealthStatus",
    "WatcherHealthCheck",
]
