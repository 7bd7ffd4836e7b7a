"""
Resilience helpers: tenacity-based retry and backoff.
"""

from svcwatch.core.resilience.retry import RetryConfig

__all__ = [
    "RetryConfig",
]
