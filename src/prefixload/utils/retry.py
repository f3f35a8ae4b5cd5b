"""Bounded exponential-backoff retry for async operations."""

import asyncio
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, Tuple, Type, TypeVar

from .logging import get_logger


T = TypeVar('T')

logger = get_logger(__name__)


@dataclass(frozen=True)
class RetryPolicy:
    """How often and how patiently a failing call is retried."""

    max_attempts: int = 4
    base_delay: float = 1.0
    max_delay: float = 30.0

    def __post_init__(self):
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if self.base_delay < 0 or self.max_delay < 0:
            raise ValueError("Retry delays must not be negative")

    def delay_for(self, attempt: int) -> float:
        """Backoff before the retry following ``attempt`` (0-based)."""
        return min(self.base_delay * (2 ** attempt), self.max_delay)


async def retry_async(
    task_func: Callable[[], Awaitable[T]],
    policy: RetryPolicy,
    retry_on: Tuple[Type[BaseException], ...],
    operation: str = "operation",
    on_retry: Optional[Callable[[int, BaseException], None]] = None,
    **log_context
) -> T:
    """Run ``task_func`` until it succeeds or the policy is exhausted.

    Only exceptions listed in ``retry_on`` are retried; anything else
    propagates on the first occurrence. The last retryable exception is
    re-raised once ``policy.max_attempts`` calls have failed.

    Args:
        task_func: Zero-argument coroutine factory, called once per attempt
        policy: Attempt ceiling and backoff curve
        retry_on: Exception types considered transient
        operation: Name used in log records
        on_retry: Optional hook called with (attempt, error) before sleeping
        **log_context: Extra key/value pairs for log records

    Returns:
        Result of the first successful call
    """
    for attempt in range(policy.max_attempts):
        try:
            return await task_func()

        except retry_on as e:
            if attempt + 1 >= policy.max_attempts:
                logger.error(
                    "Operation failed after all retries",
                    operation=operation,
                    attempts=attempt + 1,
                    error=str(e),
                    **log_context
                )
                raise

            delay = policy.delay_for(attempt)
            logger.warning(
                "Operation failed, retrying",
                operation=operation,
                attempt=attempt + 1,
                max_attempts=policy.max_attempts,
                delay=delay,
                error=str(e),
                **log_context
            )
            if on_retry is not None:
                on_retry(attempt + 1, e)

            await asyncio.sleep(delay)

    raise RuntimeError("Unexpected end of retry loop")
