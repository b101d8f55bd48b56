"""
Application factory.

Owns the per-process instances: one ExpiringCache, one Mailchimp
RateLimiter, the inbound request limiters, one CacheSweeper and the
optional MailchimpService. They are created here and exposed to handlers
through ``app.state``.
"""

from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from loguru import logger

from newsletter.datastore import InMemoryRepository, NewsletterRepository
from newsletter.exceptions import register_exception_handlers
from newsletter.integrations.mailchimp import (
    MailchimpService,
    create_mailchimp_service,
)
from newsletter.middleware.rate_limit import (
    RateLimitRules,
    RequestRateLimiter,
    rate_limit_middleware,
)
from newsletter.routes import router
from newsletter.services.cache import ExpiringCache
from newsletter.services.rate_limiter import RateLimiter
from newsletter.services.sweeper import CacheSweeper
from newsletter.settings import Settings, global_settings

USER_ID_HEADER = "X-User-Id"


def create_app(
    settings: Settings | None = None,
    repository: NewsletterRepository | None = None,
    mailchimp: MailchimpService | None = None,
) -> FastAPI:
    settings = settings or global_settings

    cache = ExpiringCache(
        default_ttl=settings.cache_default_ttl,
        single_flight=settings.cache_single_flight,
    )
    request_limiters = {
        "analytics": RequestRateLimiter(RateLimitRules.analytics, name="analytics"),
        "api": RequestRateLimiter(settings.api_rate_limit, name="api"),
    }
    sweeper = CacheSweeper(
        cache,
        interval=settings.cache_sweep_interval,
        cleanups=[limiter.cleanup for limiter in request_limiters.values()],
    )

    if mailchimp is not None:
        rate_limiter = mailchimp.client.rate_limiter
    else:
        rate_limiter = RateLimiter(settings.mailchimp_rate_limit, name="mailchimp")
        if settings.mailchimp_api_key:
            mailchimp = create_mailchimp_service(
                settings.mailchimp_api_key,
                rate_limiter,
                retry_config=settings.retry_config,
                server_prefix=settings.mailchimp_server_prefix,
                timeout=settings.request_timeout_seconds,
            )
        else:
            logger.warning("MAILCHIMP_API_KEY not set, Mailchimp sync disabled")

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        sweeper.start()
        logger.info(f"{settings.app_name} started")
        try:
            yield
        finally:
            sweeper.stop()
            await cache.close()
            if mailchimp is not None:
                await mailchimp.close()
            logger.info(f"{settings.app_name} stopped")

    app = FastAPI(title=settings.app_name, lifespan=lifespan)
    app.state.settings = settings
    app.state.cache = cache
    app.state.sweeper = sweeper
    app.state.rate_limiter = rate_limiter
    app.state.mailchimp = mailchimp
    app.state.repository = repository or InMemoryRepository()
    app.state.request_limiters = request_limiters

    register_exception_handlers(app)

    # added before bind_user, so it runs inside it and sees the user id
    if settings.api_rate_limit_enabled:
        app.middleware("http")(
            rate_limit_middleware(
                [
                    ("/api/analytics", request_limiters["analytics"]),
                    ("/api", request_limiters["api"]),
                ]
            )
        )

    @app.middleware("http")
    async def bind_user(request: Request, call_next):
        # Stand-in for JWT authentication: trust the gateway-provided header.
        request.state.user_id = request.headers.get(USER_ID_HEADER)
        return await call_next(request)

    @app.get("/health")
    async def health_check():
        return {"status": "ok", "service": settings.app_name}

    app.include_router(router)
    return app
