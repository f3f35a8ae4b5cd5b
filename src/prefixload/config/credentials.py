"""Persisted access keys written by ``prefixload login``."""

import os
from pathlib import Path
from typing import Optional, Tuple, Union

import yaml

from .loader import ConfigurationError
from .settings import StorageSettings, get_settings


def credentials_path() -> Path:
    return Path(get_settings().storage.credentials_file).expanduser()


def save_credentials(access_key: str, secret_key: str, path: Optional[Union[str, Path]] = None) -> Path:
    """Store the key pair in a YAML file readable only by the owner."""
    if not access_key or not secret_key:
        raise ConfigurationError("Access key and secret key must not be empty")

    path = Path(path) if path else credentials_path()
    path.parent.mkdir(parents=True, exist_ok=True)

    fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
    with os.fdopen(fd, "w", encoding="utf-8") as f:
        yaml.safe_dump({"access_key": access_key, "secret_key": secret_key}, f)
    os.chmod(path, 0o600)

    return path


def load_credentials(path: Optional[Union[str, Path]] = None) -> Optional[Tuple[str, str]]:
    """Return ``(access_key, secret_key)`` from the credentials file, if present."""
    path = Path(path) if path else credentials_path()
    if not path.exists():
        return None

    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    except (OSError, yaml.YAMLError) as e:
        raise ConfigurationError(f"Cannot read credentials file {path}: {e}")

    access_key = data.get("access_key")
    secret_key = data.get("secret_key")
    if not access_key or not secret_key:
        raise ConfigurationError(f"Credentials file {path} is incomplete")

    return access_key, secret_key


def resolve_credentials(settings: Optional[StorageSettings] = None) -> Tuple[str, str]:
    """Environment variables win over the credentials file.

    Raises:
        ConfigurationError: If no credentials are available
    """
    settings = settings or get_settings().storage
    if settings.access_key and settings.secret_key:
        return settings.access_key, settings.secret_key

    stored = load_credentials(settings.credentials_file)
    if stored is None:
        raise ConfigurationError(
            "No credentials found; run `prefixload login` or set "
            "PREFIXLOAD_ACCESS_KEY and PREFIXLOAD_SECRET_KEY"
        )
    return stored
