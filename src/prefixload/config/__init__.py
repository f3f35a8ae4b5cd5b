"""Configuration package for prefixload."""

from .settings import (
    AppSettings,
    LoggingSettings,
    StorageSettings,
    SyncSettings,
    get_settings,
    reset_settings
)

from .schema import (
    DEFAULT_PART_SIZE,
    MIN_PART_SIZE,
    PrefixloadConfig,
    PrefixRule
)

from .loader import (
    ConfigLoader,
    ConfigurationError,
    load_config
)

from .manager import ConfigManager

from .credentials import (
    load_credentials,
    resolve_credentials,
    save_credentials
)

__all__ = [
    # Environment settings
    "AppSettings",
    "LoggingSettings",
    "StorageSettings",
    "SyncSettings",
    "get_settings",
    "reset_settings",

    # Config file
    "DEFAULT_PART_SIZE",
    "MIN_PART_SIZE",
    "PrefixloadConfig",
    "PrefixRule",
    "ConfigLoader",
    "ConfigurationError",
    "load_config",
    "ConfigManager",

    # Credentials
    "load_credentials",
    "resolve_credentials",
    "save_credentials"
]
