"""Runtime settings for the registry, watcher and CLI."""

from typing import Optional

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    LOG_LEVEL: str = "INFO"
    LOG_JSON: bool = False
    SERVICE_NAME: str = "svcwatch"
    ENVIRONMENT: str = "development"

    # Coordination store backend (zookeeper|memory)
    COORDINATION_BACKEND: str = "zookeeper"
    ZK_HOSTS: str = "127.0.0.1:2181"
    ZK_TIMEOUT_SECONDS: float = 10.0
    # Initial connect attempts before start() gives up
    CONNECT_MAX_ATTEMPTS: int = 3

    # Per-subscriber buffer; oldest pending record is dropped when full
    SUBSCRIBER_BUFFER_SIZE: int = 256
    # Query matching (any|all)
    QUERY_MATCH_MODE: str = "any"

    # Watcher reconnect backoff
    RECONNECT_MAX_ATTEMPTS: int = 5
    RECONNECT_MIN_WAIT_SECONDS: float = 0.5
    RECONNECT_MAX_WAIT_SECONDS: float = 30.0
    REREGISTER_ON_RECONNECT: bool = True

    # Prometheus exporter port for the CLI (disabled when unset)
    METRICS_PORT: Optional[int] = None

    model_config = {
        "env_file": ".env",
        "case_sensitive": False,
    }


_settings_cache: Optional[Settings] = None


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings()
    return _settings_cache


def reset_settings() -> None:
    """Drop the cached settings (tests, CLI overrides)."""
    global _settings_cache
    _settings_cache = None
