"""Retry with exponential backoff for store and source operations."""

import asyncio
from dataclasses import dataclass
from typing import Awaitable, Callable, TypeVar

from devsync.errors import ThrottledError, TransientStoreError
from devsync.utils.logging import get_logger

logger = get_logger(__name__)

T = TypeVar("T")

Sleep = Callable[[float], Awaitable[None]]

RETRYABLE_ERRORS: tuple[type[BaseException], ...] = (ThrottledError, TransientStoreError)


@dataclass
class RetryPolicy:
    """
    Backoff settings.

    Attributes:
        max_retries: Retries after the first attempt (3 -> up to 4 attempts)
        initial_delay: Delay before the first retry, in seconds
        backoff_multiplier: Factor applied per retry (1s, 2s, 4s, ...)
    """
    max_retries: int = 3
    initial_delay: float = 1.0
    backoff_multiplier: float = 2.0

    def delay_for(self, retry_number: int, retry_after: float | None = None) -> float:
        """Delay before retry ``retry_number`` (0-based); a server hint wins."""
        if retry_after is not None and retry_after > 0:
            return retry_after
        return self.initial_delay * (self.backoff_multiplier ** retry_number)


async def retry_async(
    operation: Callable[[], Awaitable[T]],
    policy: RetryPolicy,
    operation_name: str = "operation",
    retry_on: tuple[type[BaseException], ...] = RETRYABLE_ERRORS,
    sleep: Sleep = asyncio.sleep,
) -> T:
    """
    Await ``operation`` until it succeeds or retries run out.

    Only exceptions in ``retry_on`` are retried; the last one is re-raised once
    ``policy.max_retries`` is exhausted. Anything else propagates immediately.
    """
    retry_number = 0
    while True:
        try:
            return await operation()
        except retry_on as e:
            if retry_number >= policy.max_retries:
                logger.error(f"{operation_name} still failing after {retry_number} retries: {e}")
                raise
            delay = policy.delay_for(retry_number, getattr(e, "retry_after", None))
            logger.warning(
                f"{operation_name} throttled, retrying in {delay:.1f}s "
                f"({retry_number + 1}/{policy.max_retries}): {e}"
            )
            await sleep(delay)
            retry_number += 1
