"""Shared error codes and exceptions for the registry.

Coordination-store failures and registry failures both carry an ``ErrorCode``
so callers (and the CLI) can branch on a stable value instead of a class name.
"""

from __future__ import annotations

from enum import Enum
from typing import List, Optional


class ErrorCode(str, Enum):
    CONNECTION_LOST = "CONNECTION_LOST"  # Session interrupted or refused
    PATH_EXISTS = "PATH_EXISTS"
    NO_SUCH_PATH = "NO_SUCH_PATH"
    STORE_ERROR = "STORE_ERROR"  # Any other coordination-store failure
    INVALID_DATA = "INVALID_DATA"  # Node value is not utf-8 text
    REGISTRATION_CONFLICT = "REGISTRATION_CONFLICT"
    PARTIAL_WRITE = "PARTIAL_WRITE"
    WATCHER_FATAL = "WATCHER_FATAL"
    SUBSCRIPTION_CLOSED = "SUBSCRIPTION_CLOSED"


class CoordinationError(Exception):
    """Base exception for coordination-store errors."""

    code: ErrorCode = ErrorCode.STORE_ERROR

    def __init__(self, message: str, path: Optional[str] = None):
        super().__init__(message)
        self.path = path


class CoordinationConnectionError(CoordinationError, ConnectionError):
    """Session lost, connection refused, or operation attempted while disconnected."""

    code = ErrorCode.CONNECTION_LOST


class PathExistsError(CoordinationError):
    """Node already exists."""

    code = ErrorCode.PATH_EXISTS


class NoSuchPathError(CoordinationError):
    """Node (or its parent) does not exist."""

    code = ErrorCode.NO_SUCH_PATH


class InvalidDataError(CoordinationError):
    """Node value could not be decoded."""

    code = ErrorCode.INVALID_DATA


class RegistryError(Exception):
    """Base exception for registry errors."""

    code: ErrorCode = ErrorCode.STORE_ERROR


class RegistrationConflict(RegistryError):
    """An instance with the same id is already registered."""

    code = ErrorCode.REGISTRATION_CONFLICT

    def __init__(self, instance_id: str):
        super().__init__(f"Instance '{instance_id}' is already registered")
        self.instance_id = instance_id


class PartialWriteError(RegistryError):
    """Registration failed after some of its paths were written.

    ``rolled_back`` is True when every path written so far was removed again.
    """

    code = ErrorCode.PARTIAL_WRITE

    def __init__(
        self,
        instance_id: str,
        failed_path: str,
        written: List[str],
        rolled_back: bool,
    ):
        state = "rolled back" if rolled_back else "left partially indexed"
        super().__init__(
            f"Registration of '{instance_id}' failed at {failed_path}; "
            f"{len(written)} path(s) {state}"
        )
        self.instance_id = instance_id
        self.failed_path = failed_path
        self.written = written
        self.rolled_back = rolled_back


class WatcherFatalError(RegistryError):
    """The change watcher could not re-establish its session."""

    code = ErrorCode.WATCHER_FATAL


class SubscriptionClosedError(RegistryError):
    """Read from a closed subscription with nothing left to drain."""

    code = ErrorCode.SUBSCRIPTION_CLOSED


__all__ = [
    "ErrorCode",
    "CoordinationError",
    "CoordinationConnectionError",
    "PathExistsError",
    "NoSuchPathError",
    "InvalidDataError",
    "RegistryError",
    "RegistrationConflict",
    "PartialWriteError",
    "WatcherFatalError",
    "SubscriptionClosedError",
]
