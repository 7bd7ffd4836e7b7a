"""Unified retry logic using Tenacity.

Declarative backoff for coordination-store calls that fail transiently
(lost sessions, refused connections).

Example:
    >>> config = RetryConfig(max_attempts=5, min_wait=0.5, max_wait=10)
    >>> async for attempt in config.async_retrying():
    ...     with attempt:
    ...         await store.reconnect()
"""

from __future__ import annotations

import logging
from typing import Any, Optional, Tuple, Type

from tenacity import (
    AsyncRetrying,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

logger = logging.getLogger(__name__)

__all__ = [
    "RetryConfig",
]


class RetryConfig:
    """Configuration for retry behavior."""

    def __init__(
        self,
        max_attempts: int = 3,
        min_wait: float = 1.0,
        max_wait: float = 60.0,
        multiplier: float = 2.0,
        retry_exceptions: Tuple[Type[Exception], ...] = (Exception,),
        reraise: bool = True,
        log_level: int = logging.WARNING,
    ):
        """Initialize retry configuration.

        Args:
            max_attempts: Maximum number of attempts.
            min_wait: Minimum wait time between retries (seconds).
            max_wait: Maximum wait time between retries (seconds).
            multiplier: Multiplier for exponential backoff.
            retry_exceptions: Exception types to retry on.
            reraise: Whether to re-raise the final exception.
            log_level: Log level for retry attempts.
        """
        self.max_attempts = max_attempts
        self.min_wait = min_wait
        self.max_wait = max_wait
        self.multiplier = multiplier
        self.retry_exceptions = retry_exceptions
        self.reraise = reraise
        self.log_level = log_level

    def async_retrying(self, log: Optional[logging.Logger] = None) -> AsyncRetrying:
        """Build an ``AsyncRetrying`` iterator from this configuration."""
        return AsyncRetrying(
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_exponential(multiplier=self.multiplier, min=self.min_wait, max=self.max_wait),
            retry=retry_if_exception_type(self.retry_exceptions),
            before_sleep=before_sleep_log(log or logger, self.log_level),
            reraise=self.reraise,
        )

    @classmethod
    def from_settings(cls, settings: Any) -> "RetryConfig":
        """Reconnect backoff from ``Settings``; retries only connection errors."""
        return cls(
            max_attempts=settings.RECONNECT_MAX_ATTEMPTS,
            min_wait=settings.RECONNECT_MIN_WAIT_SECONDS,
            max_wait=settings.RECONNECT_MAX_WAIT_SECONDS,
            retry_exceptions=(ConnectionError,),
        )
