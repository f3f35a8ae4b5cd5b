"""Configuration manager backing the ``config`` CLI commands."""

import os
import subprocess
import sys
from pathlib import Path
from typing import Optional, Union

from .loader import ConfigLoader, ConfigurationError
from .schema import PrefixloadConfig, PrefixRule
from ..utils.logging import get_logger


EDITABLE_FIELDS = (
    "endpoint",
    "bucket",
    "region",
    "force_path_style",
    "part_size",
    "local_directory_path",
)


def default_editor() -> str:
    """Editor used when ``$EDITOR`` is not set."""
    return "notepad" if sys.platform.startswith("win") else "nano"


class ConfigManager:
    """Reads and edits ``config.yml`` in place, keeping a ``.bak`` copy."""

    def __init__(self, config_file: Optional[Union[str, Path]] = None):
        """Initialize configuration manager.

        Args:
            config_file: Config path; the default location is used when omitted
        """
        self.loader = ConfigLoader()
        self.config_file = Path(config_file) if config_file else self.loader.default_config_path()
        self.logger = get_logger(self.__class__.__name__)

        self.loader.ensure_config_exists(self.config_file)

    def load_config(self) -> PrefixloadConfig:
        return self.loader.load_from_file(self.config_file)

    def show(self) -> str:
        """Raw YAML text of the config file."""
        return self.loader.read_text(self.config_file)

    def set_fields(self, **fields) -> PrefixloadConfig:
        """Update top-level fields; ``None`` values are left untouched.

        Raises:
            ConfigurationError: On unknown fields or values that fail validation
        """
        unknown = set(fields) - set(EDITABLE_FIELDS)
        if unknown:
            raise ConfigurationError(f"Unknown config fields: {sorted(unknown)}")

        updates = {k: v for k, v in fields.items() if v is not None}
        config = self.load_config()
        if not updates:
            return config

        updated = self.loader.load_from_dict({**config.model_dump(), **updates})
        self._save(updated)

        self.logger.info("Config fields updated", fields=sorted(updates))
        return updated

    def add_rule(self, prefix_file: str, cloud_dir: str) -> bool:
        """Append a rule unless ``prefix_file`` is already configured.

        Returns:
            True if the rule was added
        """
        config = self.load_config()
        if config.get_rule(prefix_file) is not None:
            self.logger.info("Rule already exists", prefix_file=prefix_file)
            return False

        try:
            rule = PrefixRule(prefix_file=prefix_file, cloud_dir=cloud_dir)
        except ValueError as e:
            raise ConfigurationError(f"Invalid rule: {e}")

        updated = config.model_copy(update={"directory_struct": [*config.directory_struct, rule]})
        self._save(updated)

        self.logger.info("Rule added", prefix_file=prefix_file, cloud_dir=cloud_dir)
        return True

    def remove_rule(self, prefix_file: str) -> bool:
        """Drop every rule for ``prefix_file``.

        Returns:
            True if at least one rule was removed
        """
        config = self.load_config()
        remaining = [r for r in config.directory_struct if r.prefix_file != prefix_file]
        if len(remaining) == len(config.directory_struct):
            return False

        self._save(config.model_copy(update={"directory_struct": remaining}))

        self.logger.info("Rule removed", prefix_file=prefix_file)
        return True

    def edit(self) -> int:
        """Open the config file in ``$EDITOR`` and wait for it to exit."""
        self.loader.backup_config(self.config_file)
        editor = os.environ.get("EDITOR") or default_editor()
        return subprocess.call([editor, str(self.config_file)])

    def _save(self, config: PrefixloadConfig):
        self.loader.backup_config(self.config_file)
        self.loader.save_to_file(config, self.config_file)
