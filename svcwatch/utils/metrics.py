"""Prometheus metrics registration for the registry watcher and router.

All metric objects are defined at import time.
"""

from __future__ import annotations

from prometheus_client import Counter, Gauge, Histogram

watcher_diff_passes_total = Counter(
    "svcwatch_diff_passes_total",
    "Number of watcher diff passes",
    ["status"],
)
watcher_changes_total = Counter(
    "svcwatch_changes_total",
    "Membership changes produced by diff passes",
    ["kind"],
)
watcher_pass_duration_seconds = Histogram(
    "svcwatch_pass_duration_seconds",
    "Diff pass duration (listing, diff and delivery)",
    buckets=[0.005, 0.01, 0.05, 0.1, 0.5, 1.0, 5.0],
)
watcher_snapshot_size = Gauge(
    "svcwatch_snapshot_size",
    "Instances in the membership snapshot",
)
watcher_reconnects_total = Counter(
    "svcwatch_reconnects_total",
    "Watcher reconnection outcomes",
    ["outcome"],
)
watcher_state = Gauge(
    "svcwatch_watcher_state",
    "Current watcher state (1 for the active state)",
    ["state"],
)

router_deliveries_total = Counter(
    "svcwatch_router_deliveries_total",
    "Change records placed into subscriber buffers",
)
router_dropped_total = Counter(
    "svcwatch_router_dropped_total",
    "Change records dropped from full subscriber buffers",
)
router_subscribers = Gauge(
    "svcwatch_router_subscribers",
    "Open subscriptions",
)
