"""Application configuration settings."""

from pathlib import Path
from typing import Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


CONFIG_DIR = Path("~/.config/prefixload").expanduser()
DATA_DIR = Path("~/.local/share/prefixload").expanduser()
ENV_FILE = ".env"


class StorageSettings(BaseSettings):
    """Credentials and connection options for the object store."""

    model_config = SettingsConfigDict(
        env_prefix="PREFIXLOAD_", env_file=ENV_FILE, env_file_encoding="utf-8", extra="ignore"
    )

    access_key: str = Field(default="", description="Access key id")
    secret_key: str = Field(default="", description="Secret access key")
    region: Optional[str] = Field(default=None, description="Region override")
    credentials_file: str = Field(
        default=str(CONFIG_DIR / "credentials.yml"),
        description="File written by `prefixload login`"
    )


class SyncSettings(BaseSettings):
    """Concurrency and retry tuning for the sync engine."""

    model_config = SettingsConfigDict(
        env_prefix="PREFIXLOAD_SYNC_", env_file=ENV_FILE, env_file_encoding="utf-8", extra="ignore"
    )

    max_concurrent_files: int = Field(default=4, ge=1)
    max_concurrent_parts: int = Field(default=4, ge=1)
    max_attempts: int = Field(default=4, ge=1)
    retry_base_delay: float = Field(default=1.0, ge=0)
    retry_max_delay: float = Field(default=30.0, ge=0)


class LoggingSettings(BaseSettings):
    """Logging configuration."""

    model_config = SettingsConfigDict(
        env_prefix="PREFIXLOAD_LOG_", env_file=ENV_FILE, env_file_encoding="utf-8", extra="ignore"
    )

    level: str = Field(default="INFO")
    format: str = Field(default="console")
    file_path: Optional[str] = Field(default=None)

    @field_validator("level")
    @classmethod
    def validate_level(cls, v: str) -> str:
        if v.upper() not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ValueError(f"Unknown log level: {v}")
        return v.upper()

    @field_validator("format")
    @classmethod
    def validate_format(cls, v: str) -> str:
        if v not in ("console", "json"):
            raise ValueError("format must be 'console' or 'json'")
        return v


class AppSettings(BaseSettings):
    """Main application settings."""

    model_config = SettingsConfigDict(
        env_prefix="PREFIXLOAD_",
        env_file=ENV_FILE,
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    config_file: str = Field(default=str(CONFIG_DIR / "config.yml"))

    storage: StorageSettings = Field(default_factory=StorageSettings)
    sync: SyncSettings = Field(default_factory=SyncSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)


_settings: Optional[AppSettings] = None


def get_settings() -> AppSettings:
    """Get application settings."""
    global _settings

    if _settings is None:
        _settings = AppSettings()

    return _settings


def reset_settings() -> None:
    """Drop the cached settings so the environment is read again."""
    global _settings
    _settings = None
