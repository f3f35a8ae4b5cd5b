"""Logging configuration and utilities."""

import functools
import logging
import logging.handlers
import sys
import time
from pathlib import Path
from typing import List, Optional

import structlog
import colorlog
from structlog.typing import Processor

LOG_FILE_MAX_BYTES = 10 * 1024 * 1024
LOG_FILE_BACKUPS = 5

FILE_FORMAT = (
    '{"timestamp": "%(asctime)s", "level": "%(levelname)s", '
    '"logger": "%(name)s", "thread": "%(threadName)s", "message": "%(message)s"}'
)
CONSOLE_FORMAT = "%(log_color)s%(asctime)s %(levelname)-8s%(reset)s %(name)s: %(message)s"
CONSOLE_COLORS = {
    "DEBUG": "cyan",
    "INFO": "green",
    "WARNING": "yellow",
    "ERROR": "red",
    "CRITICAL": "red,bg_white",
}

# Third-party loggers that flood DEBUG output with wire-level detail
NOISY_LOGGERS = ("botocore", "boto3", "s3transfer", "urllib3")

_HANDLER_MARK = "_prefixload_handler"


def build_processors(format_type: str, colors: bool = True) -> List[Processor]:
    """Return the structlog processor chain ending in the chosen renderer."""
    renderer: Processor
    if format_type == "json":
        renderer = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer(colors=colors)

    return [
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
        renderer,
    ]


def setup_logging(
    log_level: Optional[str] = None,
    log_format: Optional[str] = None,
    log_file: Optional[str] = None,
    quiet: bool = False
) -> None:
    """Set up logging configuration.

    Calling it again replaces the handlers installed by the previous call.

    Args:
        log_level: Level name, falls back to settings
        log_format: "console" or "json", falls back to settings
        log_file: Optional rotating log file path
        quiet: Only show warnings and errors on the console
    """
    from ..config.settings import get_settings

    settings = get_settings()

    level = (log_level or settings.logging.level).upper()
    format_type = log_format or settings.logging.format
    file_path = log_file or settings.logging.file_path

    console_level = level
    if quiet and logging.getLevelName(level) < logging.WARNING:
        console_level = "WARNING"

    root = logging.getLogger()
    root.setLevel(level)
    remove_handlers(root)

    structlog.configure(
        processors=build_processors(format_type, colors=not quiet),
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    if file_path:
        root.addHandler(create_file_handler(file_path, level))
    root.addHandler(create_console_handler(console_level))

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def remove_handlers(root: logging.Logger) -> None:
    """Detach and close handlers added by an earlier ``setup_logging``."""
    for handler in list(root.handlers):
        if getattr(handler, _HANDLER_MARK, False):
            root.removeHandler(handler)
            handler.close()


def create_file_handler(file_path: str, level: str) -> logging.Handler:
    """Rotating JSON-lines file handler; creates the parent directory."""
    log_file = Path(file_path).expanduser()
    log_file.parent.mkdir(parents=True, exist_ok=True)

    handler = logging.handlers.RotatingFileHandler(
        log_file,
        maxBytes=LOG_FILE_MAX_BYTES,
        backupCount=LOG_FILE_BACKUPS,
        encoding="utf-8",
    )
    handler.setLevel(level)
    handler.setFormatter(logging.Formatter(FILE_FORMAT))
    setattr(handler, _HANDLER_MARK, True)
    return handler


def create_console_handler(level: str) -> logging.Handler:
    # stderr keeps stdout free for the run summary
    handler = colorlog.StreamHandler(sys.stderr)
    handler.setLevel(level)
    handler.setFormatter(colorlog.ColoredFormatter(
        CONSOLE_FORMAT,
        datefmt="%H:%M:%S",
        log_colors=CONSOLE_COLORS,
    ))
    setattr(handler, _HANDLER_MARK, True)
    return handler


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """Get a structured logger instance."""
    return structlog.get_logger(name)


def log_async_execution_time(func):
    """Decorator that logs how long a coroutine took, including on failure."""

    @functools.wraps(func)
    async def wrapper(*args, **kwargs):
        logger = get_logger(func.__module__)
        started = time.monotonic()
        outcome = "failed"
        try:
            result = await func(*args, **kwargs)
            outcome = "completed"
            return result
        finally:
            logger.debug(
                f"{func.__qualname__} {outcome}",
                execution_time=f"{time.monotonic() - started:.4f}s"
            )

    return wrapper
