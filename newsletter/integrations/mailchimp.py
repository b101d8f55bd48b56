"""
Mailchimp Marketing API integration.

API Documentation: https://mailchimp.com/developer/marketing/api/
Rate limit: 10 simultaneous connections per account; this service shares one
RateLimiter (default 10 requests/s, 3 in flight) across all calls.
"""

from datetime import datetime, timedelta
from typing import Any

import httpx
from loguru import logger
from pydantic import BaseModel

from newsletter.services.cache import CacheKeys, ExpiringCache
from newsletter.services.client import RateLimitedClient
from newsletter.services.errors import ServiceError
from newsletter.services.rate_limiter import RateLimiter
from newsletter.services.retry import RetryConfig


class SubscriberStats(BaseModel):
    member_count: int = 0
    unsubscribe_count: int = 0
    cleaned_count: int = 0


class SyncedSubscriber(BaseModel):
    email: str
    name: str = ""
    status: str  # 'active' | 'unsubscribed'
    subscribed_date: str | None = None


class CampaignStats(BaseModel):
    opens: int = 0
    clicks: int = 0
    unsubscribes: int = 0


class ConnectionResult(BaseModel):
    success: bool
    message: str
    list_id: str | None = None
    total_lists: int = 0


class MailchimpService:
    """
    Mailchimp operations for one account's audience.

    Every method issues its network calls through a RateLimitedClient, so
    each call (and each retry) is throttled. Batch operations are one call.
    """

    SERVICE_ID = "mailchimp"

    def __init__(self, client: RateLimitedClient, list_id: str | None = None):
        self.client = client
        self.list_id = list_id

    async def initialize_list(self) -> str:
        """Select the account's first audience list."""
        data = await self.client.get("/lists")
        lists = data.get("lists") or []
        if not lists:
            raise ServiceError("No Mailchimp audience lists found", self.SERVICE_ID)
        self.list_id = lists[0]["id"]
        return self.list_id

    async def _require_list(self) -> str:
        if self.list_id is None:
            return await self.initialize_list()
        return self.list_id

    async def get_subscriber_stats(self) -> SubscriberStats:
        list_id = await self._require_list()
        data = await self.client.get(f"/lists/{list_id}")
        stats = data.get("stats", {})
        return SubscriberStats(
            member_count=stats.get("member_count", 0),
            unsubscribe_count=stats.get("unsubscribe_count", 0),
            cleaned_count=stats.get("cleaned_count", 0),
        )

    async def add_subscribers(self, subscribers: list[dict[str, str]]) -> dict[str, Any]:
        """Queue all subscribers in a single ``/batches`` request."""
        list_id = await self._require_list()
        operations = [
            {
                "method": "POST",
                "path": f"/lists/{list_id}/members",
                "body": {
                    "email_address": sub["email"],
                    "status": "subscribed",
                    "merge_fields": {"FNAME": sub.get("name", "")},
                },
            }
            for sub in subscribers
        ]
        result = await self.client.post("/batches", json_data={"operations": operations})
        logger.info(f"Queued Mailchimp batch of {len(operations)} subscribers")
        return result

    async def send_newsletter(self, subject: str, content: str) -> str:
        """Create, fill and send a campaign. Returns the campaign id."""
        campaign = await self._create_campaign(subject)
        campaign_id = campaign["id"]
        await self.client.put(
            f"/campaigns/{campaign_id}/content", json_data={"html": content}
        )
        await self.client.post(f"/campaigns/{campaign_id}/actions/send")
        logger.info(f"Sent Mailchimp campaign {campaign_id}")
        return campaign_id

    async def _create_campaign(self, subject: str) -> dict[str, Any]:
        list_id = await self._require_list()
        return await self.client.post(
            "/campaigns",
            json_data={
                "type": "regular",
                "recipients": {"list_id": list_id},
                "settings": {
                    "subject_line": subject,
                    "from_name": "Your Newsletter",
                    "reply_to": "newsletter@yourdomain.com",
                },
            },
        )

    async def sync_subscribers(self) -> list[SyncedSubscriber]:
        list_id = await self._require_list()
        try:
            data = await self.client.get(
                f"/lists/{list_id}/members",
                params={
                    "count": 1000,
                    "fields": (
                        "members.email_address,members.merge_fields,"
                        "members.status,members.timestamp_signup"
                    ),
                },
            )
        except ServiceError as e:
            raise ServiceError(
                f"Failed to sync subscribers: {e}", service_id=self.SERVICE_ID
            ) from e

        return [
            SyncedSubscriber(
                email=member["email_address"],
                name=member.get("merge_fields", {}).get("FNAME") or "",
                status="active" if member.get("status") == "subscribed" else "unsubscribed",
                subscribed_date=member.get("timestamp_signup") or None,
            )
            for member in data.get("members", [])
        ]

    async def get_campaign_stats(self, campaign_id: str) -> CampaignStats:
        data = await self.client.get(f"/reports/{campaign_id}")
        return CampaignStats(
            opens=data.get("opens", {}).get("opens_total", 0),
            clicks=data.get("clicks", {}).get("clicks_total", 0),
            unsubscribes=data.get("unsubscribed", 0),
        )

    async def schedule_newsletter(self, campaign_id: str, send_time: datetime) -> None:
        await self.client.post(
            f"/campaigns/{campaign_id}/actions/schedule",
            json_data={"schedule_time": send_time.isoformat()},
        )

    async def unschedule_newsletter(self, campaign_id: str) -> None:
        await self.client.post(f"/campaigns/{campaign_id}/actions/unschedule")

    async def test_connection(self) -> ConnectionResult:
        """Check credentials and list access. Never raises."""
        logger.info("Testing Mailchimp connection...")
        try:
            data = await self.client.get("/lists")
        except ServiceError as e:
            logger.error(f"Mailchimp connection failed: {e}")
            return ConnectionResult(success=False, message=f"Connection failed: {e}")

        lists = data.get("lists") or []
        total = data.get("total_items", len(lists))
        if not lists:
            return ConnectionResult(
                success=False,
                message="Connected to Mailchimp but no lists were found",
            )

        logger.info(f"Mailchimp connection successful, {total} list(s) found")
        return ConnectionResult(
            success=True,
            message=f"Connected to Mailchimp. Found {total} list(s)",
            list_id=lists[0]["id"],
            total_lists=total,
        )

    async def get_status(
        self,
        cache: ExpiringCache,
        user_id: str,
        ttl: timedelta = timedelta(minutes=5),
    ) -> dict[str, Any]:
        """Connection status, cached per user."""

        async def produce() -> dict[str, Any]:
            result = await self.test_connection()
            return result.model_dump()

        return await cache.get_or_set(CacheKeys.mailchimp_status(user_id), produce, ttl)

    async def close(self) -> None:
        await self.client.close()


def server_prefix_from_key(api_key: str) -> str:
    """Data-center suffix of a Mailchimp API key (``abc123-us21`` -> ``us21``)."""
    _, sep, prefix = api_key.rpartition("-")
    if not sep or not prefix:
        raise ValueError("Mailchimp API key has no data-center suffix")
    return prefix


def create_mailchimp_service(
    api_key: str,
    rate_limiter: RateLimiter,
    retry_config: RetryConfig | None = None,
    server_prefix: str | None = None,
    timeout: float = 30.0,
    transport: httpx.AsyncBaseTransport | None = None,
) -> MailchimpService:
    prefix = server_prefix or server_prefix_from_key(api_key)
    client = RateLimitedClient(
        service_id=MailchimpService.SERVICE_ID,
        base_url=f"https://{prefix}.api.mailchimp.com/3.0",
        rate_limiter=rate_limiter,
        retry_config=retry_config,
        auth=("anystring", api_key),
        headers={"Content-Type": "application/json"},
        timeout=timeout,
        transport=transport,
    )
    return MailchimpService(client)
