"""
RequestDeduplicator - single-flight execution of cache producers.

When several coroutines miss the same cache key at once, only the first
runs the producer; the others await the same task and receive the same
result or the same exception.
"""

import asyncio
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, TypeVar

from loguru import logger

T = TypeVar("T")


@dataclass
class DeduplicatorStats:
    started: int = 0  # producer tasks created
    joined: int = 0  # callers served by an existing task
    in_flight: int = 0

    @property
    def share_rate(self) -> float:
        callers = self.started + self.joined
        return self.joined / callers if callers else 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "started": self.started,
            "joined": self.joined,
            "in_flight": self.in_flight,
            "share_rate": f"{self.share_rate:.2%}",
        }


class RequestDeduplicator:
    """
    One in-flight producer task per cache key.

    Usage:
        producers = RequestDeduplicator()

        count = await producers.dedupe(
            "user:42:subscriber:count",
            lambda: repository.count_subscribers("42"),
        )
    """

    def __init__(self, debug: bool = False):
        self._tasks: dict[str, asyncio.Task[Any]] = {}
        self._debug = debug
        self._stats = DeduplicatorStats()

    async def dedupe(self, key: str, producer: Callable[[], Awaitable[T]]) -> T:
        """
        Await the running producer for ``key``, starting one if none runs.

        Lookup and registration happen without an await in between, so two
        callers can never both start a task for the same key.
        """
        task = self._tasks.get(key)
        if task is None:
            task = asyncio.ensure_future(producer())
            self._tasks[key] = task
            task.add_done_callback(lambda done, k=key: self._forget(k, done))
            self._stats.started += 1
            self._log(f"START: {key[:50]}")
        else:
            self._stats.joined += 1
            self._log(f"JOIN: {key[:50]}")

        # shield: a cancelled waiter must not cancel the shared task
        return await asyncio.shield(task)

    def _forget(self, key: str, task: asyncio.Task[Any]) -> None:
        if self._tasks.get(key) is task:
            del self._tasks[key]
        if not task.cancelled() and task.exception() is not None:
            self._log(f"FAILED: {key[:50]}")

    async def cancel_all(self) -> int:
        """Cancel every running producer. Returns how many were cancelled."""
        tasks, self._tasks = list(self._tasks.values()), {}
        for task in tasks:
            task.cancel()
        if tasks:
            self._log(f"CANCEL_ALL: {len(tasks)} producers")
        return len(tasks)

    def get_in_flight_count(self) -> int:
        return len(self._tasks)

    def get_stats(self) -> DeduplicatorStats:
        self._stats.in_flight = len(self._tasks)
        return self._stats

    def _log(self, message: str) -> None:
        if self._debug:
            logger.debug(f"[RequestDeduplicator] {message}")
