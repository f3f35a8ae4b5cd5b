"""Configuration loader for the YAML config file."""

import shutil
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import yaml
from pydantic import ValidationError

from .schema import MIN_PART_SIZE, PrefixloadConfig
from .settings import get_settings
from ..utils.logging import get_logger


DEFAULT_CONFIG_YAML = """\
# === PREFIXLOAD TOOL CONFIGURATION ===
# The endpoint URL of your S3-compatible storage (leave empty for AWS)
endpoint: "https://s3.example.com"

# The name of your S3 bucket to upload files to
bucket: "name_bucket"

# The upload part size in bytes (for multipart upload; 15728640 = 15MB)
part_size: 15728640

# Path to the local directory where your backups are stored
local_directory_path: "/path/to/file"

# Mapping rules for uploading specific files to specific cloud subdirectories.
# A file named "prefix_1_backup_somefile.sql" is uploaded to
# "<bucket>/prefix_1/prefix_1_backup_somefile.sql".
directory_struct:
  - prefix_file: "prefix_1_backup"
    cloud_dir: "prefix_1"

  - prefix_file: "prefix_2_backup"
    cloud_dir: "prefix_2"

  - prefix_file: "prefix_3_backup"
    cloud_dir: "prefix_3"
# === END OF CONFIGURATION ===
"""


class ConfigurationError(Exception):
    """Raised when configuration loading fails."""
    pass


class ConfigLoader:
    """Loads, validates and persists ``config.yml``."""

    def __init__(self):
        self.logger = get_logger(self.__class__.__name__)

    @staticmethod
    def default_config_path() -> Path:
        """Config path from ``PREFIXLOAD_CONFIG_FILE`` or the platform config dir."""
        return Path(get_settings().config_file).expanduser()

    def ensure_config_exists(self, file_path: Union[str, Path]) -> bool:
        """Write the bundled default config if ``file_path`` is missing.

        Returns:
            True if a new file was written
        """
        file_path = Path(file_path)
        if file_path.exists():
            return False

        file_path.parent.mkdir(parents=True, exist_ok=True)
        file_path.write_text(DEFAULT_CONFIG_YAML, encoding="utf-8")
        self.logger.info("Default config written", file_path=str(file_path))
        return True

    def read_text(self, file_path: Union[str, Path]) -> str:
        """Return the raw config file contents."""
        file_path = Path(file_path)
        try:
            return file_path.read_text(encoding="utf-8")
        except OSError as e:
            raise ConfigurationError(f"Cannot read configuration file {file_path}: {e}")

    def load_from_file(self, file_path: Union[str, Path]) -> PrefixloadConfig:
        """Load configuration from a YAML file.

        Args:
            file_path: Path to configuration file

        Returns:
            Validated PrefixloadConfig object

        Raises:
            ConfigurationError: If file cannot be loaded or validated
        """
        file_path = Path(file_path)

        if not file_path.exists():
            raise ConfigurationError(f"Configuration file not found: {file_path}")

        self.logger.debug("Loading configuration from file", file_path=str(file_path))

        try:
            data = yaml.safe_load(self.read_text(file_path))
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid YAML format: {e}")

        return self.load_from_dict(data or {})

    def load_from_dict(self, data: Dict[str, Any]) -> PrefixloadConfig:
        """Validate a configuration mapping."""
        if not isinstance(data, dict):
            raise ConfigurationError("Configuration root must be a mapping")

        try:
            config = PrefixloadConfig(**data)
        except ValidationError as e:
            raise ConfigurationError(f"Invalid configuration: {e}")

        self.logger.debug(
            "Configuration loaded",
            bucket=config.bucket,
            rules_count=len(config.directory_struct)
        )
        return config

    def backup_config(self, file_path: Union[str, Path]) -> Optional[Path]:
        """Copy ``config.yml`` to ``config.yml.bak`` before it is modified."""
        file_path = Path(file_path)
        if not file_path.exists():
            return None

        backup_path = file_path.with_name(file_path.name + ".bak")
        shutil.copyfile(file_path, backup_path)
        self.logger.debug("Config backup created", backup_path=str(backup_path))
        return backup_path

    def save_to_file(self, config: PrefixloadConfig, file_path: Union[str, Path]):
        """Save configuration to a YAML file."""
        file_path = Path(file_path)
        file_path.parent.mkdir(parents=True, exist_ok=True)

        data = config.model_dump(mode="json")

        try:
            with open(file_path, 'w', encoding='utf-8') as f:
                yaml.safe_dump(data, f, default_flow_style=False, sort_keys=False, allow_unicode=True)
        except OSError as e:
            raise ConfigurationError(f"Failed to save configuration: {e}")

        self.logger.info("Configuration saved", file_path=str(file_path))

    def validate_config(self, config: PrefixloadConfig, check_paths: bool = True) -> List[str]:
        """Check a loaded configuration and return warnings.

        Hard errors (missing directory, identical rules) raise ConfigurationError; soft issues
        are returned as warnings.
        """
        warnings = []

        if check_paths:
            directory = Path(config.local_directory_path).expanduser()
            if not directory.is_dir():
                raise ConfigurationError(f"Local directory does not exist: {directory}")

        # Identical rules would upload every match to the same key twice, concurrently
        seen = set()
        for rule in config.directory_struct:
            target = (rule.prefix_file, rule.cloud_dir.strip("/"))
            if target in seen:
                raise ConfigurationError(
                    f"Duplicate rule: prefix_file '{rule.prefix_file}' -> cloud_dir '{rule.cloud_dir}'"
                )
            seen.add(target)

        if config.part_size < MIN_PART_SIZE:
            warnings.append(
                f"part_size {config.part_size} is below the S3 minimum of {MIN_PART_SIZE} bytes"
            )

        if not config.directory_struct:
            warnings.append("No directory_struct rules configured, nothing will be uploaded")

        prefixes = [rule.prefix_file for rule in config.directory_struct]
        if len(prefixes) != len(set(prefixes)):
            warnings.append("Duplicate prefix_file entries found")

        for warning in warnings:
            self.logger.warning("Configuration warning", warning=warning)

        return warnings


def load_config(
    file_path: Optional[Union[str, Path]] = None,
    create_default: bool = True
) -> PrefixloadConfig:
    """Load the config from ``file_path`` or the default location."""
    loader = ConfigLoader()
    path = Path(file_path) if file_path else loader.default_config_path()
    if create_default:
        loader.ensure_config_exists(path)
    return loader.load_from_file(path)
