"""
Inbound API rate limiting.

Each client key (user id and remote address by default) gets its own
sliding window. Requests over the limit are rejected with 429 instead of
being queued, and may put the key into a block period.

    app.middleware("http")(
        rate_limit_middleware([
            ("/api/analytics", RequestRateLimiter(RateLimitRules.analytics)),
            ("/api", RequestRateLimiter(RateLimitRules.api)),
        ])
    )

The key generator reads the user id bound by the authentication
middleware, so that middleware must run first.
"""

import math
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Awaitable, Callable, Sequence

from fastapi import Request, Response
from fastapi.responses import JSONResponse
from loguru import logger

from newsletter.middleware.base import get_user_id
from newsletter.services.rate_limiter import SlidingWindow


@dataclass
class RateLimitRule:
    """Limit applied to every client key of one limiter."""

    max_requests: int
    window: timedelta
    message: str = "Too many requests, please try again later."
    status_code: int = 429
    skip_successful_requests: bool = False  # 2xx responses do not count
    skip_failed_requests: bool = False  # responses >= 400 do not count
    block_duration: timedelta = timedelta(0)  # lockout after the limit is hit

    def __post_init__(self) -> None:
        if self.max_requests < 1:
            raise ValueError("max_requests must be at least 1")
        if self.window <= timedelta(0):
            raise ValueError("window must be positive")


class RateLimitRules:
    """Rules for the route groups of the API."""

    api = RateLimitRule(
        max_requests=100,
        window=timedelta(minutes=15),
        message="Too many requests from this IP, please try again later.",
    )
    authenticated = RateLimitRule(
        max_requests=200,
        window=timedelta(minutes=15),
        message="Request limit reached, please slow down.",
    )
    email = RateLimitRule(
        max_requests=10,
        window=timedelta(minutes=1),
        message="Email rate limit exceeded, please wait before sending more.",
    )
    analytics = RateLimitRule(
        max_requests=100,
        window=timedelta(minutes=5),
        message="Analytics request limit exceeded.",
    )


@dataclass
class ClientState:
    window: SlidingWindow
    blocked_until: float | None = None


def iso_timestamp(epoch: float) -> str:
    """UTC time with milliseconds and a ``Z`` suffix, e.g. 2024-05-01T12:00:00.000Z"""
    moment = datetime.fromtimestamp(epoch, tz=timezone.utc)
    return moment.strftime("%Y-%m-%dT%H:%M:%S.") + f"{moment.microsecond // 1000:03d}Z"


@dataclass
class RateLimitDecision:
    allowed: bool
    limit: int
    remaining: int
    reset_at: float  # epoch seconds
    retry_after: int | None = None
    message: str = ""
    headers: dict[str, str] = field(init=False)

    def __post_init__(self) -> None:
        self.headers = {
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": str(self.remaining),
            "X-RateLimit-Reset": iso_timestamp(self.reset_at),
        }
        if self.retry_after is not None:
            self.headers["Retry-After"] = str(self.retry_after)


def client_key(request: Request) -> str:
    host = request.client.host if request.client else "unknown"
    return f"{get_user_id(request)}:{host}"


class RequestRateLimiter:
    """
    Per-client sliding-window limiter for inbound requests.

    Usage:
        limiter = RequestRateLimiter(RateLimitRules.api, name="api")

        decision = limiter.check("alice:10.0.0.1")
        if not decision.allowed:
            ...
    """

    def __init__(
        self,
        rule: RateLimitRule,
        name: str = "api",
        key_generator: Callable[[Request], str] = client_key,
        clock: Callable[[], float] = time.time,
    ):
        self.rule = rule
        self.name = name
        self.key_generator = key_generator
        self._clock = clock
        self._clients: dict[str, ClientState] = {}

    def check(self, key: str) -> RateLimitDecision:
        """Count a request for ``key`` if the limit allows it."""
        now = self._clock()
        state = self._clients.get(key)
        if state is None:
            state = ClientState(SlidingWindow(self.rule.window.total_seconds()))
            self._clients[key] = state

        if state.blocked_until is not None and state.blocked_until > now:
            logger.warning(f"Rate limit block active for {key}")
            return self._reject(
                state.blocked_until,
                now,
                f"{self.rule.message} Blocked until {iso_timestamp(state.blocked_until)}",
            )

        if state.window.prune(now) >= self.rule.max_requests:
            reset_at = state.window.reset_at()
            block = self.rule.block_duration.total_seconds()
            if block > 0:
                state.blocked_until = now + block
                logger.warning(
                    f"Rate limit exceeded for {key}. Blocking for {block * 1000:.0f}ms"
                )
            else:
                logger.warning(f"Rate limit exceeded for {key}")
            return self._reject(reset_at, now, self.rule.message)

        state.window.record(now)
        return RateLimitDecision(
            allowed=True,
            limit=self.rule.max_requests,
            remaining=self.rule.max_requests - len(state.window),
            reset_at=now + state.window.length,
        )

    def _reject(self, reset_at: float, now: float, message: str) -> RateLimitDecision:
        return RateLimitDecision(
            allowed=False,
            limit=self.rule.max_requests,
            remaining=0,
            reset_at=reset_at,
            retry_after=math.ceil(reset_at - now),
            message=message,
        )

    def settle(self, key: str, status_code: int) -> None:
        """Uncount the latest request of ``key`` when its outcome is skipped."""
        skip = (self.rule.skip_successful_requests and 200 <= status_code < 300) or (
            self.rule.skip_failed_requests and status_code >= 400
        )
        state = self._clients.get(key)
        if skip and state is not None:
            state.window.discard_latest()

    def cleanup(self) -> int:
        """Forget clients with no recent requests and no active block."""
        now = self._clock()
        idle = []
        for key, state in self._clients.items():
            if state.blocked_until is not None and state.blocked_until <= now:
                state.blocked_until = None
            if state.window.prune(now) == 0 and state.blocked_until is None:
                idle.append(key)
        for key in idle:
            del self._clients[key]
        return len(idle)

    def __len__(self) -> int:
        return len(self._clients)



LimiterRoutes = Sequence[tuple[str, RequestRateLimiter]]


def limiter_for(path: str, routes: LimiterRoutes) -> RequestRateLimiter | None:
    """First limiter whose path prefix matches ``path``."""
    for prefix, limiter in routes:
        if path == prefix or path.startswith(prefix.rstrip("/") + "/"):
            return limiter
    return None


def rate_limit_middleware(routes: LimiterRoutes) -> Callable[..., Awaitable[Response]]:
    """
    HTTP middleware applying a limiter per path prefix.

    Rejections are ``{"status": "error", "message", "retryAfter"}`` with the
    rule's status code. Every response of a limited path carries the
    ``X-RateLimit-*`` headers; rejections also carry ``Retry-After``.
    """

    async def middleware(request: Request, call_next) -> Response:
        limiter = limiter_for(request.url.path, routes)
        if limiter is None:
            return await call_next(request)

        key = limiter.key_generator(request)
        decision = limiter.check(key)
        if not decision.allowed:
            return JSONResponse(
                status_code=limiter.rule.status_code,
                content={
                    "status": "error",
                    "message": decision.message,
                    "retryAfter": decision.retry_after,
                },
                headers=decision.headers,
            )

        try:
            response = await call_next(request)
        except Exception:
            limiter.settle(key, 500)
            raise

        limiter.settle(key, response.status_code)
        response.headers.update(decision.headers)
        return response

    return middleware
