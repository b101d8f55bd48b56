"""
HTTP response caching for FastAPI endpoints.

Both helpers are higher-order handlers: they wrap an endpoint function and
act on the value it returns, instead of intercepting the response object.

    @router.get("/subscribers")
    @cache_response(key_generator=CacheKeyGenerators.subscriber_list)
    async def list_subscribers(request: Request): ...

    @router.post("/subscribers")
    @invalidate_cache(CacheInvalidationPatterns.subscriber)
    async def add_subscriber(request: Request, body: SubscriberIn): ...

The wrapped endpoint must declare a ``request: Request`` parameter. The cache
comes from the decorator argument or, if omitted, ``request.app.state.cache``.
"""

import functools
import json
from datetime import timedelta
from typing import Any, Callable, Sequence

from fastapi import Request, Response
from fastapi.responses import JSONResponse
from loguru import logger

from newsletter.middleware.base import Handler, as_response, find_request, get_user_id
from newsletter.services.cache import ExpiringCache, KeyPrefix

CACHE_HEADER = "X-Cache"
MUTATING_METHODS = frozenset({"POST", "PUT", "PATCH", "DELETE"})

Pattern = str | KeyPrefix
PatternSource = Sequence[Pattern] | Callable[[Request], Sequence[Pattern]]


def default_key_generator(request: Request) -> str:
    # repeated parameters (?tag=a&tag=b) keep every value, as a list
    params = {}
    for name in request.query_params.keys():
        values = request.query_params.getlist(name)
        params[name] = values[0] if len(values) == 1 else values
    query = json.dumps(params, sort_keys=True, separators=(",", ":"))
    return f"http:{get_user_id(request)}:{request.url.path}:{query}"


def cache_response(
    cache: ExpiringCache | None = None,
    *,
    ttl: timedelta = timedelta(minutes=5),
    key_generator: Callable[[Request], str] = default_key_generator,
    condition: Callable[[Request], bool] | None = None,
    cache_error_responses: bool = True,
) -> Callable[[Handler], Handler]:
    """
    Cache JSON responses of a GET endpoint.

    A hit replays the stored status and body with ``X-Cache: HIT`` and never
    calls the endpoint. A miss calls it, stores ``{"status", "data"}`` and
    adds ``X-Cache: MISS``. With ``cache_error_responses=False`` responses
    with status >= 400 are returned but not stored.
    """

    def decorator(handler: Handler) -> Handler:
        @functools.wraps(handler)
        async def wrapper(*args: Any, **kwargs: Any) -> Any:
            request = find_request(handler, args, kwargs)

            if request.method != "GET":
                return await handler(*args, **kwargs)
            if condition is not None and not condition(request):
                return await handler(*args, **kwargs)

            store = _resolve_cache(cache, request)
            key = key_generator(request)

            cached = store.get(key)
            if cached is not None:
                logger.debug(f"Cache HIT: {key}")
                return JSONResponse(
                    content=cached["data"],
                    status_code=cached.get("status", 200),
                    headers={CACHE_HEADER: "HIT"},
                )

            logger.debug(f"Cache MISS: {key}")
            response = as_response(await handler(*args, **kwargs))
            response.headers[CACHE_HEADER] = "MISS"

            if _is_json(response) and (
                cache_error_responses or response.status_code < 400
            ):
                store.set(
                    key,
                    {
                        "status": response.status_code,
                        "data": json.loads(response.body),
                    },
                    ttl,
                )

            return response

        return wrapper

    return decorator


def invalidate_cache(
    patterns: PatternSource,
    cache: ExpiringCache | None = None,
) -> Callable[[Handler], Handler]:
    """
    Invalidate cache keys after a successful mutating request.

    Runs only for POST/PUT/PATCH/DELETE, and only when the endpoint returned
    normally with a 2xx status. Invalidation failures are logged and never
    change the response.
    """

    def decorator(handler: Handler) -> Handler:
        @functools.wraps(handler)
        async def wrapper(*args: Any, **kwargs: Any) -> Any:
            request = find_request(handler, args, kwargs)
            result = await handler(*args, **kwargs)

            if request.method not in MUTATING_METHODS:
                return result

            status_code = result.status_code if isinstance(result, Response) else 200
            if 200 <= status_code < 300:
                invalidate_patterns(request, patterns, cache)

            return result

        return wrapper

    return decorator


def invalidate_patterns(
    request: Request,
    patterns: PatternSource,
    cache: ExpiringCache | None = None,
) -> None:
    """
    Drop the keys matched by ``patterns`` now. Errors are logged, never raised.

    For handlers that must invalidate before a later step that may fail.
    """
    store = _resolve_cache(cache, request)
    try:
        resolved = patterns(request) if callable(patterns) else patterns
    except Exception as e:
        logger.error(f"Failed to resolve cache invalidation patterns: {e}")
        return

    for pattern in resolved:
        try:
            count = store.invalidate(pattern)
        except Exception as e:
            logger.error(f"Cache invalidation failed for '{pattern}': {e}")
            continue
        if count > 0:
            logger.debug(f"Invalidated {count} cache entries matching: {pattern}")


def _resolve_cache(cache: ExpiringCache | None, request: Request) -> ExpiringCache:
    if cache is not None:
        return cache
    return request.app.state.cache


def _is_json(response: Response) -> bool:
    media_type = response.media_type or response.headers.get("content-type", "")
    return "json" in media_type and bool(getattr(response, "body", b""))


class CacheKeyGenerators:
    """Key generators for specific routes."""

    @staticmethod
    def subscriber_list(request: Request) -> str:
        page = request.query_params.get("page", "1")
        limit = request.query_params.get("limit", "100")
        return f"subscribers:{get_user_id(request)}:page:{page}:limit:{limit}"

    @staticmethod
    def newsletter_list(request: Request) -> str:
        return f"newsletters:{get_user_id(request)}:list"

    @staticmethod
    def analytics_growth(request: Request) -> str:
        period = request.query_params.get("period", "30")
        return f"analytics:{get_user_id(request)}:growth:{period}"

    @staticmethod
    def settings(request: Request) -> str:
        return f"settings:{get_user_id(request)}"


class CacheInvalidationPatterns:
    """Keys to drop after a mutation of each resource type."""

    @staticmethod
    def subscriber(request: Request) -> list[Pattern]:
        user_id = get_user_id(request)
        return [
            KeyPrefix("subscribers", user_id),
            KeyPrefix("analytics", user_id),
            KeyPrefix("user", user_id, "subscriber", "count"),
            KeyPrefix("user", user_id, "analytics"),
        ]

    @staticmethod
    def newsletter(request: Request) -> list[Pattern]:
        user_id = get_user_id(request)
        return [
            KeyPrefix("newsletters", user_id),
            KeyPrefix("analytics", user_id),
            KeyPrefix("user", user_id, "newsletter", "stats"),
            KeyPrefix("user", user_id, "analytics"),
        ]

    @staticmethod
    def settings(request: Request) -> list[Pattern]:
        user_id = get_user_id(request)
        return [
            KeyPrefix("settings", user_id),
            KeyPrefix("user", user_id),
        ]
