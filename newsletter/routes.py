"""
API routes for settings, subscribers, newsletters and analytics.

Reads are cached per user; writes invalidate the affected keys.
"""

from datetime import timedelta

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel, Field

from newsletter.datastore import NewsletterRepository, Subscriber, UserSettings
from newsletter.exceptions import (
    ConflictError,
    NotFoundError,
    ServiceNotConfiguredError,
    ValidationError,
)
from newsletter.integrations.mailchimp import MailchimpService
from newsletter.middleware.base import get_user_id
from newsletter.middleware.cache import (
    CacheInvalidationPatterns,
    CacheKeyGenerators,
    cache_response,
    invalidate_cache,
    invalidate_patterns,
)
from newsletter.services.cache import CacheKeys, ExpiringCache
from newsletter.services.rate_limiter import RateLimiter

router = APIRouter(prefix="/api")


class SubscriberIn(BaseModel):
    email: str
    name: str


class SubscribersIn(BaseModel):
    subscribers: list[SubscriberIn] = Field(min_length=1)
    sync_mailchimp: bool = False


class NewsletterIn(BaseModel):
    title: str
    subject: str
    content: str


def get_repository(request: Request) -> NewsletterRepository:
    return request.app.state.repository


def get_cache(request: Request) -> ExpiringCache:
    return request.app.state.cache


def get_rate_limiter(request: Request) -> RateLimiter:
    return request.app.state.rate_limiter


def get_mailchimp(request: Request) -> MailchimpService | None:
    return request.app.state.mailchimp


# Settings


@router.get("/settings")
@cache_response(
    ttl=timedelta(minutes=10),
    key_generator=CacheKeyGenerators.settings,
    cache_error_responses=False,
)
async def read_settings(
    request: Request,
    repository: NewsletterRepository = Depends(get_repository),
):
    settings = await repository.get_settings(get_user_id(request))
    return settings.model_dump(mode="json", exclude={"mailchimp": {"api_key"}})


@router.put("/settings")
@invalidate_cache(CacheInvalidationPatterns.settings)
async def update_settings(
    request: Request,
    settings: UserSettings,
    repository: NewsletterRepository = Depends(get_repository),
):
    saved = await repository.update_settings(get_user_id(request), settings)
    return saved.model_dump(mode="json", exclude={"mailchimp": {"api_key"}})


# Subscribers


@router.get("/subscribers")
@cache_response(
    key_generator=CacheKeyGenerators.subscriber_list,
    cache_error_responses=False,
)
async def list_subscribers(
    request: Request,
    page: int = 1,
    limit: int = 100,
    repository: NewsletterRepository = Depends(get_repository),
):
    rows = await repository.list_subscribers(get_user_id(request), page, limit)
    return {
        "page": page,
        "limit": limit,
        "subscribers": [row.model_dump(mode="json") for row in rows],
    }


@router.get("/subscribers/count")
async def count_subscribers(
    request: Request,
    repository: NewsletterRepository = Depends(get_repository),
    cache: ExpiringCache = Depends(get_cache),
):
    user_id = get_user_id(request)
    count = await cache.get_or_set(
        CacheKeys.subscriber_count(user_id),
        lambda: repository.count_subscribers(user_id),
    )
    return {"count": count}


@router.post("/subscribers", status_code=201)
@invalidate_cache(CacheInvalidationPatterns.subscriber)
async def add_subscribers(
    request: Request,
    body: SubscribersIn,
    repository: NewsletterRepository = Depends(get_repository),
    mailchimp: MailchimpService | None = Depends(get_mailchimp),
):
    added = await repository.add_subscribers(
        get_user_id(request),
        [Subscriber(email=s.email, name=s.name) for s in body.subscribers],
    )
    if not added:
        raise ConflictError("All subscribers already exist")
    # the local write stands even if the sync below fails
    invalidate_patterns(request, CacheInvalidationPatterns.subscriber)

    synced = False
    if body.sync_mailchimp:
        if mailchimp is None:
            raise ServiceNotConfiguredError("Mailchimp is not configured")
        await mailchimp.add_subscribers(
            [{"email": s.email, "name": s.name} for s in added]
        )
        synced = True

    return {"added": len(added), "synced": synced}


@router.delete("/subscribers/{email}")
@invalidate_cache(CacheInvalidationPatterns.subscriber)
async def remove_subscriber(
    request: Request,
    email: str,
    repository: NewsletterRepository = Depends(get_repository),
):
    if not await repository.remove_subscriber(get_user_id(request), email):
        raise NotFoundError(f"Subscriber {email} not found")
    return {"status": "deleted", "email": email}


# Newsletters


@router.get("/newsletters")
@cache_response(
    key_generator=CacheKeyGenerators.newsletter_list,
    cache_error_responses=False,
)
async def list_newsletters(
    request: Request,
    repository: NewsletterRepository = Depends(get_repository),
):
    rows = await repository.list_newsletters(get_user_id(request))
    return {"newsletters": [row.model_dump(mode="json") for row in rows]}


@router.post("/newsletters", status_code=201)
@invalidate_cache(CacheInvalidationPatterns.newsletter)
async def create_newsletter(
    request: Request,
    body: NewsletterIn,
    repository: NewsletterRepository = Depends(get_repository),
):
    newsletter = await repository.create_newsletter(
        get_user_id(request), body.title, body.subject, body.content
    )
    return newsletter.model_dump(mode="json")


# Analytics


@router.get("/analytics/growth")
@cache_response(
    ttl=timedelta(minutes=15),
    key_generator=CacheKeyGenerators.analytics_growth,
    cache_error_responses=False,
)
async def subscriber_growth(
    request: Request,
    period: str = "30",
    repository: NewsletterRepository = Depends(get_repository),
):
    if not period.isdigit() or int(period) < 1:
        raise ValidationError("period must be a positive number of days")
    points = await repository.subscriber_growth(get_user_id(request), int(period))
    return {"period": int(period), "growth": [p.model_dump() for p in points]}


# Integrations


@router.get("/mailchimp/status")
async def mailchimp_status(
    request: Request,
    cache: ExpiringCache = Depends(get_cache),
    mailchimp: MailchimpService | None = Depends(get_mailchimp),
):
    if mailchimp is None:
        raise ServiceNotConfiguredError("Mailchimp is not configured")
    return await mailchimp.get_status(cache, get_user_id(request))


# Cache administration


@router.get("/cache/stats")
async def cache_stats(
    cache: ExpiringCache = Depends(get_cache),
    rate_limiter: RateLimiter = Depends(get_rate_limiter),
):
    return {
        "cache": cache.get_stats().to_dict(),
        "rate_limiter": rate_limiter.get_status(),
    }


@router.delete("/cache")
async def clear_cache(cache: ExpiringCache = Depends(get_cache)):
    cache.clear()
    return {"status": "ok"}
