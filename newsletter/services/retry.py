"""
Retry with exponential backoff.

Composes with RateLimiter in either order; the Mailchimp client nests
``with_retry(lambda: limiter.with_rate_limit(call))`` so each attempt takes
its own rate-limit slot.
"""

import asyncio
from dataclasses import dataclass
from datetime import timedelta
from typing import Awaitable, Callable, TypeVar

from loguru import logger

from newsletter.services.errors import RetryExhaustedError

T = TypeVar("T")


@dataclass
class RetryConfig:
    """Configuration for retried operations."""

    max_attempts: int = 3
    delay: timedelta = timedelta(seconds=1)  # wait before the second attempt
    backoff_factor: float = 2.0
    retry_on: tuple[type[BaseException], ...] = (Exception,)

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")


DEFAULT_RETRY_CONFIG = RetryConfig()


async def with_retry(
    operation: Callable[[], Awaitable[T]],
    config: RetryConfig | None = None,
    *,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> T:
    """
    Run ``operation`` until it succeeds or ``config.max_attempts`` is reached.

    Errors outside ``config.retry_on`` propagate immediately.

    Raises:
        RetryExhaustedError: every attempt failed; chained from the last error
    """
    config = config or DEFAULT_RETRY_CONFIG
    current_delay = config.delay.total_seconds()
    last_error: BaseException | None = None

    for attempt in range(1, config.max_attempts + 1):
        try:
            return await operation()
        except config.retry_on as e:
            last_error = e
            if attempt == config.max_attempts:
                break

            logger.warning(
                f"Operation failed (attempt {attempt}/{config.max_attempts}). "
                f"Retrying in {current_delay * 1000:.0f}ms..."
            )
            logger.error(f"Error details: {type(e).__name__}: {e}")

            await sleep(current_delay)
            current_delay *= config.backoff_factor

    raise RetryExhaustedError(config.max_attempts, last_error) from last_error
