"""Core."""

from .config import (
    AdminCredentials,
    Configuration,
    GatewaySettings,
    ServerSettings,
    UserRecord,
)
from .store import ConfigError, ConfigStore, LoginActivity
from .watcher import ConfigWatcher, DebounceState, ReloadDebouncer

__all__ = [
    "AdminCredentials",
    "Configuration",
    "GatewaySettings",
    "ServerSettings",
    "UserRecord",
    "ConfigError",
    "ConfigStore",
    "LoginActivity",
    "ConfigWatcher",
    "DebounceState",
    "ReloadDebouncer",
]
