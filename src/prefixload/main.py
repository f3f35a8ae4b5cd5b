"""Main application entry point."""

from pathlib import Path
from typing import Optional, Union

from .cli import build_client, main as cli_main, sync_bucket
from .config import ConfigLoader, get_settings, load_config, resolve_credentials
from .core import SyncReport
from .storage import PermanentStorageError
from .utils.logging import get_logger, setup_logging


async def main(config_file: Optional[Union[str, Path]] = None, quiet: bool = False) -> SyncReport:
    """Run one sync pass with the on-disk configuration and stored credentials.

    Intended for embedding prefixload in other tooling (cron wrappers,
    schedulers); the ``prefixload`` command is the interactive front end.

    Raises:
        ConfigurationError: If the config or credentials are missing or invalid
        StorageError: If the bucket cannot be reached or access is denied
        LocalFileError: If the local directory cannot be listed
    """
    setup_logging(quiet=quiet)

    logger = get_logger("main")
    settings = get_settings()

    config = load_config(config_file)
    ConfigLoader().validate_config(config)
    access_key, secret_key = resolve_credentials(settings.storage)

    client = build_client(config, access_key, secret_key)
    report = await sync_bucket(client, config, settings.sync)
    if report is None:
        raise PermanentStorageError(
            f"Access denied to bucket '{config.bucket}'", code="AccessDenied", status=403
        )

    logger.info(
        "Sync finished",
        uploaded=report.uploaded,
        skipped=report.skipped,
        failed=report.failed
    )
    return report


if __name__ == "__main__":
    cli_main()
