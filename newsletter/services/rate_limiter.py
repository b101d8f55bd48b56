"""
RateLimiter - sliding-window rate limit combined with a concurrency cap.

Callers over the limit are queued, not rejected. Grants are strictly FIFO:
only the head of the queue is ever considered, so a later caller never
overtakes an earlier one that is still blocked.

Queued callers are woken by:
- ``release()``, when a concurrency slot frees up
- a loop timer, when the oldest timestamp leaves the sliding window
"""

import asyncio
import time
from collections import deque
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Awaitable, Callable, TypeVar

from loguru import logger

T = TypeVar("T")


class SlidingWindow:
    """
    Grant timestamps that fall inside the last `length` seconds.

    A timestamp leaves the window once `now - length` reaches it.
    """

    def __init__(self, length: float):
        self.length = length
        self._timestamps: deque[float] = deque()

    def prune(self, now: float) -> int:
        """Drop timestamps outside the window; return how many remain."""
        window_start = now - self.length
        while self._timestamps and self._timestamps[0] <= window_start:
            self._timestamps.popleft()
        return len(self._timestamps)

    def record(self, now: float) -> None:
        self._timestamps.append(now)

    def discard_latest(self) -> None:
        if self._timestamps:
            self._timestamps.pop()

    def reset_at(self) -> float | None:
        """When the oldest timestamp leaves the window."""
        if not self._timestamps:
            return None
        return self._timestamps[0] + self.length

    def __len__(self) -> int:
        return len(self._timestamps)


@dataclass
class RateLimiterConfig:
    """Configuration for a rate limiter."""

    max_requests: int = 10  # grants per sliding window
    interval: timedelta = timedelta(seconds=1)  # window length
    concurrency: int = 3  # operations holding a slot at once

    def __post_init__(self) -> None:
        if self.max_requests < 1:
            raise ValueError("max_requests must be at least 1")
        if self.concurrency < 1:
            raise ValueError("concurrency must be at least 1")
        if self.interval <= timedelta(0):
            raise ValueError("interval must be positive")


class RateLimiter:
    """
    Rate limiter for one external API target.

    Usage:
        limiter = RateLimiter(RateLimiterConfig(max_requests=10, concurrency=3))

        result = await limiter.with_rate_limit(lambda: client.get("/lists"))

        async with limiter:
            await client.post("/batches", json=payload)
    """

    def __init__(
        self,
        config: RateLimiterConfig | None = None,
        name: str = "default",
        clock: Callable[[], float] = time.monotonic,
    ):
        self.config = config or RateLimiterConfig()
        self.name = name
        self._clock = clock
        self._window = SlidingWindow(self.config.interval.total_seconds())
        self._active = 0
        self._waiters: deque[asyncio.Future[None]] = deque()
        self._wakeup: asyncio.TimerHandle | None = None

    @property
    def active_count(self) -> int:
        return self._active

    @property
    def queue_length(self) -> int:
        return len(self._waiters)

    async def acquire(self) -> None:
        """Wait until both the window and the concurrency cap allow a grant."""
        now = self._clock()
        if not self._waiters and self._can_grant(now):
            self._grant(now)
            return

        future: asyncio.Future[None] = asyncio.get_running_loop().create_future()
        self._waiters.append(future)
        if len(self._waiters) > self.config.max_requests:
            logger.warning(
                f"Rate limiter '{self.name}' queue size: {len(self._waiters)}"
            )
        self._schedule_wakeup(now)

        try:
            await future
        except asyncio.CancelledError:
            if future.done() and not future.cancelled():
                # granted just before the cancellation landed
                self.release()
            else:
                try:
                    self._waiters.remove(future)
                except ValueError:
                    pass
                self._dispatch()
            raise

    def release(self) -> None:
        """Free a concurrency slot and try to grant the head of the queue."""
        if self._active <= 0:
            raise RuntimeError(
                f"Rate limiter '{self.name}' released more times than acquired"
            )
        self._active -= 1
        self._dispatch()

    async def with_rate_limit(self, operation: Callable[[], Awaitable[T]]) -> T:
        """Run ``operation`` while holding a slot; the slot is always released."""
        await self.acquire()
        try:
            return await operation()
        finally:
            self.release()

    async def __aenter__(self) -> "RateLimiter":
        await self.acquire()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        self.release()

    def _can_grant(self, now: float) -> bool:
        return (
            self._window.prune(now) < self.config.max_requests
            and self._active < self.config.concurrency
        )

    def _grant(self, now: float) -> None:
        self._window.record(now)
        self._active += 1

    def _dispatch(self) -> None:
        while self._waiters:
            head = self._waiters[0]
            if head.done():
                # cancelled while queued
                self._waiters.popleft()
                continue

            now = self._clock()
            if not self._can_grant(now):
                self._schedule_wakeup(now)
                return

            self._waiters.popleft()
            self._grant(now)
            head.set_result(None)

    def _schedule_wakeup(self, now: float) -> None:
        """Arm a timer when only the sliding window blocks the queue head."""
        if self._wakeup is not None or not self._waiters:
            return
        if self._active >= self.config.concurrency:
            return  # release() will dispatch
        if self._window.prune(now) < self.config.max_requests:
            return

        delay = max(self._window.reset_at() - now, 0.0)
        loop = asyncio.get_running_loop()
        self._wakeup = loop.call_later(delay, self._on_wakeup)

    def _on_wakeup(self) -> None:
        self._wakeup = None
        self._dispatch()

    def get_status(self) -> dict[str, Any]:
        """Get current limiter state as a dictionary."""
        window_used = self._window.prune(self._clock())
        return {
            "name": self.name,
            "active": self._active,
            "queued": len(self._waiters),
            "window_used": window_used,
            "max_requests": self.config.max_requests,
            "interval_ms": int(self._window.length * 1000),
            "concurrency": self.config.concurrency,
        }
