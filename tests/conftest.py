import os

import pytest

from svcwatch.core.config import reset_settings


# List of environment variables that may be modified by tests
_ENV_VARS_TO_ISOLATE = [
    "LOG_LEVEL",
    "LOG_JSON",
    "SERVICE_NAME",
    "ENVIRONMENT",
    "COORDINATION_BACKEND",
    "ZK_HOSTS",
    "ZK_TIMEOUT_SECONDS",
    "CONNECT_MAX_ATTEMPTS",
    "SUBSCRIBER_BUFFER_SIZE",
    "QUERY_MATCH_MODE",
    "RECONNECT_MAX_ATTEMPTS",
    "RECONNECT_MIN_WAIT_SECONDS",
    "RECONNECT_MAX_WAIT_SECONDS",
    "REREGISTER_ON_RECONNECT",
    "METRICS_PORT",
]


@pytest.fixture(autouse=True)
def env_isolation():
    """Isolate environment variables between tests."""
    backup = {k: os.environ.get(k) for k in _ENV_VARS_TO_ISOLATE}
    try:
        yield
    finally:
        for k, v in backup.items():
            if v is None:
                os.environ.pop(k, None)
            else:
                os.environ[k] = v


@pytest.fixture(autouse=True)
def settings_isolation():
    """Drop the cached Settings so each test reads its own environment."""
    reset_settings()
    try:
        yield
    finally:
        reset_settings()
