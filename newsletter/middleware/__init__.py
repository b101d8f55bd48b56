from newsletter.middleware.base import get_user_id
from newsletter.middleware.cache import (
    CacheInvalidationPatterns,
    CacheKeyGenerators,
    cache_response,
    default_key_generator,
    invalidate_cache,
    invalidate_patterns,
)
from newsletter.middleware.rate_limit import (
    RateLimitRule,
    RateLimitRules,
    RequestRateLimiter,
    rate_limit_middleware,
)

__all__ = [
    "CacheInvalidationPatterns",
    "CacheKeyGenerators",
    "RateLimitRule",
    "RateLimitRules",
    "RequestRateLimiter",
    "cache_response",
    "default_key_generator",
    "get_user_id",
    "invalidate_cache",
    "invalidate_patterns",
    "rate_limit_middleware",
]
