"""CLI interface for prefixload."""

import asyncio
import signal
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from typing import Any, Callable, List, Optional, Tuple

import click

from . import __version__
from .config import (
    ConfigLoader,
    ConfigManager,
    ConfigurationError,
    PrefixloadConfig,
    get_settings,
    load_config,
    resolve_credentials,
    save_credentials,
)
from .config.settings import DATA_DIR, SyncSettings
from .core import (
    FileStatus,
    LocalFileError,
    ProgressEvent,
    ProgressStage,
    SyncEngine,
    SyncReport,
)
from .scheduler import BackupScheduler, SchedulerError, create_trigger, next_fire_time
from .storage import S3StorageClient, StorageError
from .utils.logging import get_logger, setup_logging

EXIT_INTERRUPTED = 130

STATUS_LABELS = {
    FileStatus.UPLOADED: "uploaded",
    FileStatus.SKIPPED: "skipped",
    FileStatus.FAILED: "FAILED",
    FileStatus.CANCELLED: "cancelled",
}


def _configure_logging(ctx: Any, quiet: bool = False) -> None:
    settings = get_settings()
    log_file = settings.logging.file_path
    if quiet and not log_file:
        log_file = str(DATA_DIR / "run.log")

    setup_logging(
        log_level="DEBUG" if ctx.obj.get("verbose") else None,
        log_file=log_file,
        quiet=quiet,
    )


def print_progress(event: ProgressEvent) -> None:
    """Echo one line per finished candidate."""
    if event.stage != ProgressStage.COMPLETED or event.outcome is None:
        return

    outcome = event.outcome
    line = f"{STATUS_LABELS[outcome.status]:<9} {outcome.remote_key}"
    if outcome.error:
        line += f" ({outcome.error})"
    click.echo(line, err=outcome.status == FileStatus.FAILED)


def _load_run_config(ctx: Any, config_file: Optional[str]) -> Tuple[PrefixloadConfig, str, str]:
    """Load and validate the config and credentials, exiting 1 on any problem."""
    try:
        config = load_config(config_file)
        ConfigLoader().validate_config(config)
        access_key, secret_key = resolve_credentials(get_settings().storage)
    except ConfigurationError as e:
        click.echo(f"Error: {e}", err=True)
        ctx.exit(1)
    return config, access_key, secret_key


def _worker_count(sync_settings: SyncSettings) -> int:
    # One reader thread per part plus the head/put call of each file in flight
    return sync_settings.max_concurrent_files * (sync_settings.max_concurrent_parts + 1)


def _install_signal_handlers(loop: asyncio.AbstractEventLoop, handler: Callable[[], None]) -> List[int]:
    installed = []
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, handler)
        except NotImplementedError:
            # Windows event loops; Ctrl+C then surfaces as KeyboardInterrupt
            get_logger(__name__).debug("Signal handlers not supported", signal=int(sig))
            continue
        installed.append(sig)
    return installed


async def sync_bucket(
    client: S3StorageClient,
    config: PrefixloadConfig,
    sync_settings: SyncSettings,
    progress_callback: Optional[Callable[[ProgressEvent], None]] = None,
    executor: Optional[ThreadPoolExecutor] = None
) -> Optional[SyncReport]:
    """Check bucket access, then run one sync pass.

    Returns:
        The run report, or None if access to the bucket was denied
    """
    if not await client.check_bucket_access():
        return None

    engine = SyncEngine.from_settings(
        client, config, sync_settings, progress_callback=progress_callback, executor=executor
    )

    loop = asyncio.get_running_loop()
    installed = _install_signal_handlers(loop, engine.request_stop)
    try:
        directory = Path(config.local_directory_path).expanduser()
        return await engine.run(config.directory_struct, directory)
    finally:
        for sig in installed:
            loop.remove_signal_handler(sig)


async def serve_schedule(scheduler: BackupScheduler) -> None:
    """Serve scheduled backups until SIGINT/SIGTERM."""
    loop = asyncio.get_running_loop()
    installed = _install_signal_handlers(loop, scheduler.request_stop)
    try:
        await scheduler.serve()
    finally:
        for sig in installed:
            loop.remove_signal_handler(sig)


def build_client(
    config: PrefixloadConfig,
    access_key: str,
    secret_key: str,
    executor: Optional[ThreadPoolExecutor] = None,
    max_pool_connections: int = 16
) -> S3StorageClient:
    settings = get_settings()
    if settings.storage.region and not config.region:
        config = config.model_copy(update={"region": settings.storage.region})
    return S3StorageClient.from_config(
        config,
        access_key,
        secret_key,
        max_pool_connections=max_pool_connections,
        executor=executor,
    )


@click.group()
@click.option(
    "--verbose",
    "-v",
    is_flag=True,
    help="Enable verbose/debug logging output",
)
@click.version_option(__version__, prog_name="prefixload")
@click.pass_context
def main(ctx: Any, verbose: bool) -> None:
    """prefixload - back up files to S3 by file name prefix."""
    ctx.ensure_object(dict)
    ctx.obj["verbose"] = verbose


@main.command()
@click.option("--quiet", "-q", is_flag=True, help="Only print the final summary")
@click.option(
    "--config",
    "config_file",
    type=click.Path(dir_okay=False),
    default=None,
    help="Configuration file (default: ~/.config/prefixload/config.yml)",
)
@click.pass_context
def run(ctx: Any, quiet: bool, config_file: Optional[str]) -> None:
    """Upload new and changed files matching the configured prefixes.

    Files whose size and ETag already match the object in the bucket are
    skipped. Exits with status 1 if any file failed.
    """
    _configure_logging(ctx, quiet=quiet)
    settings = get_settings()

    config, access_key, secret_key = _load_run_config(ctx, config_file)

    sync_settings = settings.sync
    workers = _worker_count(sync_settings)
    report = None
    error = None

    with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="prefixload") as executor:
        client = build_client(
            config, access_key, secret_key, executor=executor, max_pool_connections=workers
        )
        try:
            report = asyncio.run(sync_bucket(
                client,
                config,
                sync_settings,
                progress_callback=None if quiet else print_progress,
                executor=executor,
            ))
        except (StorageError, LocalFileError) as e:
            error = e
        except KeyboardInterrupt:
            click.echo("\nSync cancelled by user", err=True)
            ctx.exit(EXIT_INTERRUPTED)

    if error is not None:
        click.echo(f"Error: {error}", err=True)
        ctx.exit(1)

    if report is None:
        click.echo(f"Error: access denied to bucket '{config.bucket}'", err=True)
        ctx.exit(1)

    for line in report.summary_lines():
        click.echo(line)

    integrity_failures = report.integrity_failures
    if integrity_failures:
        click.echo(f"\n{len(integrity_failures)} file(s) failed integrity verification:", err=True)
        for outcome in integrity_failures:
            click.echo(f"  {outcome.remote_key}: {outcome.error}", err=True)

    if report.has_failures:
        ctx.exit(1)
    if report.cancelled:
        click.echo("Sync stopped before all files were processed", err=True)
        ctx.exit(EXIT_INTERRUPTED)


@main.command()
@click.argument("cron")
@click.option("--quiet", "-q", is_flag=True, help="Do not print per-file progress")
@click.option(
    "--config",
    "config_file",
    type=click.Path(dir_okay=False),
    default=None,
    help="Configuration file (default: ~/.config/prefixload/config.yml)",
)
@click.pass_context
def schedule(ctx: Any, cron: str, quiet: bool, config_file: Optional[str]) -> None:
    """Run the backup on a cron schedule until interrupted.

    CRON is a five-field crontab expression, e.g. "0 3 * * *" for every
    night at 03:00 local time.
    """
    _configure_logging(ctx, quiet=quiet)

    try:
        trigger = create_trigger(cron)
    except SchedulerError as e:
        click.echo(f"Error: {e}", err=True)
        ctx.exit(1)

    config, access_key, secret_key = _load_run_config(ctx, config_file)
    sync_settings = get_settings().sync
    workers = _worker_count(sync_settings)

    with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="prefixload") as executor:
        client = build_client(
            config, access_key, secret_key, executor=executor, max_pool_connections=workers
        )
        scheduler = BackupScheduler(
            client,
            config,
            sync_settings,
            progress_callback=None if quiet else print_progress,
            executor=executor,
        )
        scheduler.add_backup_job(trigger)
        click.echo(f"Backup scheduled ({cron}), next run at {next_fire_time(trigger)}")
        click.echo("Press Ctrl+C to stop.")

        try:
            asyncio.run(serve_schedule(scheduler))
        except KeyboardInterrupt:
            # No signal handlers on this loop; Ctrl+C is the normal way to stop
            pass

    click.echo(f"Scheduler stopped after {scheduler.run_count} run(s)")


@main.command()
@click.option(
    "--config",
    "config_file",
    type=click.Path(dir_okay=False),
    default=None,
    help="Configuration file naming the bucket to verify against",
)
@click.pass_context
def login(ctx: Any, config_file: Optional[str]) -> None:
    """Store your S3 credentials.

    The credentials are verified against the configured bucket and saved to
    ~/.config/prefixload/credentials.yml, readable only by you.
    """
    _configure_logging(ctx)

    access_key = click.prompt("Access key ID")
    secret_key = click.prompt("Secret access key", hide_input=True)

    try:
        config = load_config(config_file)
    except ConfigurationError as e:
        click.echo(f"Error: {e}", err=True)
        ctx.exit(1)

    try:
        valid = asyncio.run(build_client(config, access_key, secret_key).check_bucket_access())
    except StorageError as e:
        click.echo(f"Credentials not valid: {e}", err=True)
        ctx.exit(1)

    if not valid:
        click.echo(f"Credentials not valid: access denied to bucket '{config.bucket}'", err=True)
        ctx.exit(1)

    try:
        path = save_credentials(access_key, secret_key)
    except (ConfigurationError, OSError) as e:
        click.echo(f"Error: cannot save credentials: {e}", err=True)
        ctx.exit(1)

    click.echo(f"Credentials have been saved to {path}")


@main.group("config")
@click.option(
    "--config",
    "config_file",
    type=click.Path(dir_okay=False),
    default=None,
    help="Configuration file (default: ~/.config/prefixload/config.yml)",
)
@click.pass_context
def config_group(ctx: Any, config_file: Optional[str]) -> None:
    """Show or change the configuration file."""
    _configure_logging(ctx)
    try:
        ctx.obj["manager"] = ConfigManager(config_file)
    except OSError as e:
        click.echo(f"Error: cannot create configuration file: {e}", err=True)
        ctx.exit(1)


@config_group.command("show")
@click.pass_context
def config_show(ctx: Any) -> None:
    """Print the configuration file."""
    manager: ConfigManager = ctx.obj["manager"]
    try:
        click.echo(manager.show(), nl=False)
    except ConfigurationError as e:
        click.echo(f"Error: {e}", err=True)
        ctx.exit(1)


@config_group.command("edit")
@click.pass_context
def config_edit(ctx: Any) -> None:
    """Open the configuration file in $EDITOR."""
    manager: ConfigManager = ctx.obj["manager"]
    try:
        code = manager.edit()
    except OSError as e:
        click.echo(f"Error: cannot start editor: {e}", err=True)
        ctx.exit(1)

    if code != 0:
        click.echo(f"Editor exited with status {code}", err=True)
        ctx.exit(1)

    try:
        manager.load_config()
    except ConfigurationError as e:
        click.echo(f"Warning: edited configuration is invalid: {e}", err=True)
        click.echo(f"The previous version is in {manager.config_file}.bak", err=True)
        ctx.exit(1)


@config_group.command("set")
@click.option("--endpoint", default=None, help="S3 endpoint URL (e.g. https://s3.amazonaws.com)")
@click.option("--bucket", default=None, help="Bucket to back up into")
@click.option("--region", default=None, help="Bucket region")
@click.option(
    "--force-path-style/--no-force-path-style",
    default=None,
    help="Use path-style addressing (needed by most S3-compatible services)",
)
@click.option("--part-size", type=click.IntRange(min=1), default=None, help="Multipart part size in bytes")
@click.option("--local-directory-path", default=None, help="Local directory to scan for files")
@click.pass_context
def config_set(ctx: Any, **fields: Any) -> None:
    """Update one or more top-level fields in the config."""
    manager: ConfigManager = ctx.obj["manager"]

    if all(value is None for value in fields.values()):
        click.echo("Nothing to update; pass at least one option.", err=True)
        ctx.exit(1)

    try:
        manager.set_fields(**fields)
    except ConfigurationError as e:
        click.echo(f"Error: {e}", err=True)
        ctx.exit(1)

    click.echo("Config updated!")


@config_group.command("dir-add")
@click.argument("prefix_file")
@click.argument("cloud_dir")
@click.pass_context
def config_dir_add(ctx: Any, prefix_file: str, cloud_dir: str) -> None:
    """Map files starting with PREFIX_FILE to CLOUD_DIR in the bucket."""
    manager: ConfigManager = ctx.obj["manager"]
    try:
        added = manager.add_rule(prefix_file, cloud_dir)
    except ConfigurationError as e:
        click.echo(f"Error: {e}", err=True)
        ctx.exit(1)

    if not added:
        click.echo(f"Error: a rule for prefix '{prefix_file}' already exists.", err=True)
        ctx.exit(1)

    click.echo("Directory entry added.")


@config_group.command("dir-rm")
@click.argument("prefix_file")
@click.pass_context
def config_dir_rm(ctx: Any, prefix_file: str) -> None:
    """Remove the rule for PREFIX_FILE."""
    manager: ConfigManager = ctx.obj["manager"]
    try:
        removed = manager.remove_rule(prefix_file)
    except ConfigurationError as e:
        click.echo(f"Error: {e}", err=True)
        ctx.exit(1)

    if not removed:
        click.echo(f"Error: no rule for prefix '{prefix_file}' found.", err=True)
        ctx.exit(1)

    click.echo("Directory entry removed.")


if __name__ == "__main__":
    main()
