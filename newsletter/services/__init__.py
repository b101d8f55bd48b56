"""
Service layer infrastructure - caching and resilience for the backend.

Provides:
- ExpiringCache: in-process TTL cache with pattern invalidation
- CacheSweeper: periodic expiry sweep on APScheduler
- RequestDeduplicator: single-flight execution of cache producers
- RateLimiter: sliding-window + concurrency limiter for outbound calls
- with_retry: exponential backoff retry
- RateLimitedClient: HTTP client combining the limiter and retry
"""

from newsletter.services.errors import (
    ServiceError,
    TransientServiceError,
    RequestTimeoutError,
    RateLimitError,
    ServiceUnavailableError,
    RetryExhaustedError,
)
from newsletter.services.cache import (
    CacheEntry,
    CacheKeys,
    CacheStats,
    ExpiringCache,
    KeyPrefix,
)
from newsletter.services.deduplicator import RequestDeduplicator
from newsletter.services.sweeper import CacheSweeper
from newsletter.services.rate_limiter import RateLimiter, RateLimiterConfig, SlidingWindow
from newsletter.services.retry import RetryConfig, with_retry
from newsletter.services.client import RateLimitedClient

__all__ = [
    # Errors
    "ServiceError",
    "TransientServiceError",
    "RequestTimeoutError",
    "RateLimitError",
    "ServiceUnavailableError",
    "RetryExhaustedError",
    # Cache
    "CacheEntry",
    "CacheKeys",
    "CacheStats",
    "ExpiringCache",
    "KeyPrefix",
    "CacheSweeper",
    "RequestDeduplicator",
    # Rate limiting / retry
    "RateLimiter",
    "RateLimiterConfig",
    "SlidingWindow",
    "RetryConfig",
    "with_retry",
    # Client
    "RateLimitedClient",
]
