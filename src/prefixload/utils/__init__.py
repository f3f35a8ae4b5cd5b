"""Shared utilities."""

from .logging import setup_logging, get_logger, log_async_execution_time
from .retry import RetryPolicy, retry_async

__all__ = [
    "setup_logging",
    "get_logger",
    "log_async_execution_time",
    "RetryPolicy",
    "retry_async",
]
