"""
ExpiringCache - in-process key/value cache with per-entry TTL.

Features:
- TTL expiry, checked lazily on read and proactively by a periodic sweep
- Bulk invalidation by regular expression or by structured key prefix
- Read-through ``get_or_set`` with optional single-flight producers

Every synchronous operation mutates the store in one step with no await in
between, so the cache is safe to share across coroutines without a lock.
"""

import re
import sys
import time
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Awaitable, Callable, Iterator, TypeVar

from loguru import logger

from newsletter.services.deduplicator import RequestDeduplicator

T = TypeVar("T")

KEY_SEPARATOR = ":"

_MISSING = object()


@dataclass
class CacheEntry:
    """A single cache entry."""

    value: Any
    expires_at: float

    def is_expired(self, now: float) -> bool:
        return now > self.expires_at


@dataclass(frozen=True)
class KeyPrefix:
    """
    Structured invalidation predicate over ``:``-separated cache keys.

    ``KeyPrefix("subscribers", "42")`` matches ``subscribers:42`` and any
    key that starts with ``subscribers:42:``, but not ``subscribers:420``.
    """

    parts: tuple[str, ...]

    def __init__(self, *parts: Any):
        if not parts:
            raise ValueError("KeyPrefix needs at least one segment")
        object.__setattr__(self, "parts", tuple(str(p) for p in parts))

    def matches(self, key: str) -> bool:
        # segments may contain ":" themselves (e.g. user id "org:7")
        head = KEY_SEPARATOR.join(self.parts)
        return key == head or key.startswith(head + KEY_SEPARATOR)

    def __str__(self) -> str:
        return KEY_SEPARATOR.join(self.parts) + KEY_SEPARATOR + "*"


class ExpiringCache:
    """
    Process-wide expiring cache.

    Usage:
        cache = ExpiringCache(default_ttl=timedelta(minutes=5))

        cache.set("user:42:settings", settings, ttl=timedelta(minutes=10))
        settings = cache.get("user:42:settings")

        count = await cache.get_or_set(
            CacheKeys.subscriber_count("42"),
            lambda: repository.count_subscribers("42"),
        )

        cache.delete_pattern("subscribers:42:.*")
    """

    def __init__(
        self,
        default_ttl: timedelta = timedelta(minutes=5),
        single_flight: bool = False,
        clock: Callable[[], float] = time.time,
        debug: bool = False,
    ):
        self._store: dict[str, CacheEntry] = {}
        self._default_ttl = default_ttl
        self._single_flight = single_flight
        self._clock = clock
        self._debug = debug
        self._deduplicator = RequestDeduplicator(debug=debug)
        self._stats = CacheStats()

    @property
    def default_ttl(self) -> timedelta:
        return self._default_ttl

    def get(self, key: str, default: Any = None) -> Any:
        """Return the cached value, or ``default`` if missing or expired."""
        entry = self._live_entry(key)
        if entry is None:
            self._stats.misses += 1
            self._log(f"MISS: {key[:50]}")
            return default
        self._stats.hits += 1
        self._log(f"HIT: {key[:50]}")
        return entry.value

    def set(self, key: str, value: Any, ttl: timedelta | None = None) -> None:
        """Store ``value`` under ``key``, replacing any existing entry."""
        ttl = ttl if ttl is not None else self._default_ttl
        self._store[key] = CacheEntry(
            value=value,
            expires_at=self._clock() + ttl.total_seconds(),
        )
        self._log(f"SET: {key[:50]} (TTL: {ttl.total_seconds()}s)")

    def has(self, key: str) -> bool:
        """Presence check with the same expiry semantics as ``get``."""
        return self._live_entry(key) is not None

    def delete(self, key: str) -> bool:
        """Delete a specific key. Returns True if something was removed."""
        if self._store.pop(key, None) is None:
            return False
        self._log(f"DELETE: {key[:50]}")
        return True

    def delete_pattern(self, pattern: str) -> int:
        """
        Delete all keys matching a regular expression.

        The expression is searched anywhere in the key (not anchored).
        A malformed pattern raises ``re.error``.

        Returns:
            Number of entries deleted
        """
        regex = re.compile(pattern)
        return self.delete_matching(lambda key: regex.search(key) is not None)

    def delete_matching(self, predicate: Callable[[str], bool]) -> int:
        """Delete every key for which ``predicate`` returns True."""
        doomed = [key for key in self._store if predicate(key)]
        for key in doomed:
            del self._store[key]
        if doomed:
            self._log(f"INVALIDATE: {len(doomed)} entries")
        return len(doomed)

    def invalidate(self, pattern: "str | KeyPrefix") -> int:
        """Delete keys by regex string or by structured prefix."""
        if isinstance(pattern, KeyPrefix):
            return self.delete_matching(pattern.matches)
        return self.delete_pattern(pattern)

    def clear(self) -> None:
        """Clear all cache entries."""
        count = len(self._store)
        self._store.clear()
        logger.info(f"Cache cleared ({count} entries removed)")

    async def get_or_set(
        self,
        key: str,
        producer: Callable[[], Awaitable[T]],
        ttl: timedelta | None = None,
        single_flight: bool | None = None,
    ) -> T:
        """
        Return the cached value for ``key``, producing and storing it on a miss.

        A failing producer propagates its exception and caches nothing.
        Without single-flight, concurrent misses on the same key each run the
        producer; with it, they share one producer call.
        """
        cached = self.get(key, _MISSING)
        if cached is not _MISSING:
            return cached

        use_single_flight = (
            single_flight if single_flight is not None else self._single_flight
        )

        try:
            if use_single_flight:
                value = await self._deduplicator.dedupe(
                    key, lambda: self._produce(key, producer, ttl)
                )
            else:
                value = await self._produce(key, producer, ttl)
        except Exception as e:
            logger.error(f"Error in get_or_set for '{key}': {e}")
            raise

        return value

    async def _produce(
        self,
        key: str,
        producer: Callable[[], Awaitable[T]],
        ttl: timedelta | None,
    ) -> T:
        value = await producer()
        self.set(key, value, ttl)
        return value

    def cleanup_expired(self) -> int:
        """Remove all expired entries. Returns count of removed entries."""
        now = self._clock()
        expired = [k for k, v in self._store.items() if v.is_expired(now)]
        for key in expired:
            del self._store[key]

        if expired:
            logger.debug(f"Cleaned up {len(expired)} expired cache entries")

        return len(expired)

    def keys(self) -> Iterator[str]:
        """Iterate over currently held keys, expired or not."""
        return iter(list(self._store))

    def get_stats(self) -> "CacheStats":
        """Get cache statistics."""
        now = self._clock()
        active = 0
        expired = 0
        memory = sys.getsizeof(self._store)
        for key, entry in self._store.items():
            if entry.is_expired(now):
                expired += 1
            else:
                active += 1
            memory += sys.getsizeof(key) + sys.getsizeof(entry.value)

        self._stats.total_entries = len(self._store)
        self._stats.active_entries = active
        self._stats.expired_entries = expired
        self._stats.memory_usage = memory
        return self._stats

    async def close(self) -> None:
        """Cancel any in-flight single-flight producers."""
        await self._deduplicator.cancel_all()

    def _live_entry(self, key: str) -> CacheEntry | None:
        entry = self._store.get(key)
        if entry is None:
            return None
        if entry.is_expired(self._clock()):
            del self._store[key]
            self._log(f"EXPIRED: {key[:50]}")
            return None
        return entry

    def __len__(self) -> int:
        return len(self._store)

    def _log(self, message: str) -> None:
        """Log debug message if debug mode is enabled."""
        if self._debug:
            logger.debug(f"[ExpiringCache] {message}")


@dataclass
class CacheStats:
    """Cache statistics."""

    total_entries: int = 0
    active_entries: int = 0
    expired_entries: int = 0
    memory_usage: int = 0  # approximate bytes held by keys and values
    hits: int = 0
    misses: int = 0

    @property
    def hit_rate(self) -> float:
        total = self.hits + self.misses
        if total == 0:
            return 0.0
        return self.hits / total

    def to_dict(self) -> dict[str, Any]:
        return {
            "total_entries": self.total_entries,
            "active_entries": self.active_entries,
            "expired_entries": self.expired_entries,
            "memory_usage": self.memory_usage,
            "hits": self.hits,
            "misses": self.misses,
            "hit_rate": f"{self.hit_rate:.2%}",
        }


class CacheKeys:
    """Key builders shared by every call site that caches per-user data."""

    @staticmethod
    def user_settings(user_id: str) -> str:
        return f"user:{user_id}:settings"

    @staticmethod
    def subscriber_count(user_id: str) -> str:
        return f"user:{user_id}:subscriber:count"

    @staticmethod
    def newsletter_stats(user_id: str) -> str:
        return f"user:{user_id}:newsletter:stats"

    @staticmethod
    def analytics_growth(user_id: str, period: str) -> str:
        return f"user:{user_id}:analytics:growth:{period}"

    @staticmethod
    def analytics_engagement(user_id: str) -> str:
        return f"user:{user_id}:analytics:engagement"

    @staticmethod
    def mailchimp_status(user_id: str) -> str:
        return f"user:{user_id}:mailchimp:status"
