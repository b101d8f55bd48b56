import asyncio
import json
from datetime import datetime, timedelta, timezone

import httpx
import pytest

from newsletter.integrations.mailchimp import (
    create_mailchimp_service,
    server_prefix_from_key,
)
from newsletter.services.cache import ExpiringCache
from newsletter.services.errors import ServiceError, TransientServiceError
from newsletter.services.rate_limiter import RateLimiter
from newsletter.services.retry import RetryConfig

API_KEY = "0123456789abcdef-us21"
FAST_RETRY = RetryConfig(
    max_attempts=2, delay=timedelta(0), retry_on=(TransientServiceError,)
)


def run_async(coro):
    return asyncio.run(coro)


class FakeMailchimp:
    """Minimal Marketing API double keyed by (method, path)."""

    def __init__(self, routes: dict[tuple[str, str], httpx.Response]):
        self.routes = routes
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path.removeprefix("/3.0")
        response = self.routes.get((request.method, path))
        if response is None:
            return httpx.Response(404, json={"title": "Resource Not Found"})
        # fresh copy, the same canned response may be served more than once
        return httpx.Response(
            response.status_code, headers=response.headers, content=response.content
        )

    def calls(self, method: str, path: str) -> list[httpx.Request]:
        return [
            r
            for r in self.requests
            if r.method == method and r.url.path.removeprefix("/3.0") == path
        ]


LISTS = httpx.Response(200, json={"lists": [{"id": "list1"}], "total_items": 1})


def make_service(fake: FakeMailchimp):
    return create_mailchimp_service(
        API_KEY,
        RateLimiter(name="mailchimp"),
        retry_config=FAST_RETRY,
        transport=httpx.MockTransport(fake),
    )


def test_server_prefix_from_key():
    assert server_prefix_from_key("abc123-us21") == "us21"
    with pytest.raises(ValueError):
        server_prefix_from_key("abc123")


def test_service_targets_the_key_data_center_with_basic_auth():
    fake = FakeMailchimp({("GET", "/lists"): LISTS})
    service = make_service(fake)

    async def scenario():
        list_id = await service.initialize_list()
        await service.close()
        return list_id

    assert run_async(scenario()) == "list1"
    request = fake.requests[0]
    assert request.url.host == "us21.api.mailchimp.com"
    assert request.headers["Authorization"].startswith("Basic ")


def test_initialize_list_without_lists_raises():
    fake = FakeMailchimp({("GET", "/lists"): httpx.Response(200, json={"lists": []})})
    service = make_service(fake)

    with pytest.raises(ServiceError):
        run_async(service.initialize_list())


def test_add_subscribers_is_one_batch_call():
    fake = FakeMailchimp(
        {
            ("GET", "/lists"): LISTS,
            ("POST", "/batches"): httpx.Response(200, json={"id": "batch1"}),
        }
    )
    service = make_service(fake)
    subscribers = [
        {"email": f"reader{i}@example.com", "name": f"Reader {i}"} for i in range(25)
    ]

    result = run_async(service.add_subscribers(subscribers))

    assert result == {"id": "batch1"}
    batches = fake.calls("POST", "/batches")
    assert len(batches) == 1
    operations = json.loads(batches[0].content)["operations"]
    assert len(operations) == 25
    assert operations[0] == {
        "method": "POST",
        "path": "/lists/list1/members",
        "body": {
            "email_address": "reader0@example.com",
            "status": "subscribed",
            "merge_fields": {"FNAME": "Reader 0"},
        },
    }


def test_send_newsletter_creates_fills_and_sends():
    fake = FakeMailchimp(
        {
            ("GET", "/lists"): LISTS,
            ("POST", "/campaigns"): httpx.Response(200, json={"id": "camp1"}),
            ("PUT", "/campaigns/camp1/content"): httpx.Response(200, json={}),
            ("POST", "/campaigns/camp1/actions/send"): httpx.Response(204),
        }
    )
    service = make_service(fake)

    campaign_id = run_async(service.send_newsletter("Weekly", "<p>hi</p>"))

    assert campaign_id == "camp1"
    create = json.loads(fake.calls("POST", "/campaigns")[0].content)
    assert create["recipients"] == {"list_id": "list1"}
    assert create["settings"]["subject_line"] == "Weekly"
    content = json.loads(fake.calls("PUT", "/campaigns/camp1/content")[0].content)
    assert content == {"html": "<p>hi</p>"}
    assert len(fake.calls("POST", "/campaigns/camp1/actions/send")) == 1


def test_sync_subscribers_maps_member_status():
    fake = FakeMailchimp(
        {
            ("GET", "/lists"): LISTS,
            ("GET", "/lists/list1/members"): httpx.Response(
                200,
                json={
                    "members": [
                        {
                            "email_address": "a@example.com",
                            "merge_fields": {"FNAME": "Ann"},
                            "status": "subscribed",
                            "timestamp_signup": "2024-01-02T00:00:00+00:00",
                        },
                        {
                            "email_address": "b@example.com",
                            "merge_fields": {},
                            "status": "unsubscribed",
                            "timestamp_signup": "",
                        },
                    ]
                },
            ),
        }
    )
    service = make_service(fake)

    members = run_async(service.sync_subscribers())

    assert [(m.email, m.name, m.status) for m in members] == [
        ("a@example.com", "Ann", "active"),
        ("b@example.com", "", "unsubscribed"),
    ]
    assert members[1].subscribed_date is None


def test_subscriber_and_campaign_stats():
    fake = FakeMailchimp(
        {
            ("GET", "/lists"): LISTS,
            ("GET", "/lists/list1"): httpx.Response(
                200, json={"stats": {"member_count": 12, "unsubscribe_count": 2}}
            ),
            ("GET", "/reports/camp1"): httpx.Response(
                200,
                json={
                    "opens": {"opens_total": 40},
                    "clicks": {"clicks_total": 9},
                    "unsubscribed": 1,
                },
            ),
        }
    )
    service = make_service(fake)

    async def scenario():
        return (
            await service.get_subscriber_stats(),
            await service.get_campaign_stats("camp1"),
        )

    stats, campaign = run_async(scenario())
    assert (stats.member_count, stats.unsubscribe_count, stats.cleaned_count) == (12, 2, 0)
    assert (campaign.opens, campaign.clicks, campaign.unsubscribes) == (40, 9, 1)


def test_schedule_and_unschedule():
    fake = FakeMailchimp(
        {
            ("POST", "/campaigns/camp1/actions/schedule"): httpx.Response(204),
            ("POST", "/campaigns/camp1/actions/unschedule"): httpx.Response(204),
        }
    )
    service = make_service(fake)
    send_time = datetime(2025, 3, 1, 9, 0, tzinfo=timezone.utc)

    async def scenario():
        await service.schedule_newsletter("camp1", send_time)
        await service.unschedule_newsletter("camp1")

    run_async(scenario())
    body = json.loads(fake.calls("POST", "/campaigns/camp1/actions/schedule")[0].content)
    assert body == {"schedule_time": "2025-03-01T09:00:00+00:00"}
    assert len(fake.calls("POST", "/campaigns/camp1/actions/unschedule")) == 1


def test_connection_failure_is_reported_not_raised():
    fake = FakeMailchimp({("GET", "/lists"): httpx.Response(401, json={"title": "API Key Invalid"})})
    service = make_service(fake)

    result = run_async(service.test_connection())

    assert result.success is False
    assert result.message.startswith("Connection failed")


def test_status_is_cached_per_user():
    fake = FakeMailchimp({("GET", "/lists"): LISTS})
    service = make_service(fake)
    cache = ExpiringCache()

    async def scenario():
        first = await service.get_status(cache, "u1")
        second = await service.get_status(cache, "u1")
        await service.get_status(cache, "u2")
        return first, second

    first, second = run_async(scenario())
    assert first == second
    assert first["success"] is True
    assert first["list_id"] == "list1"
    assert len(fake.calls("GET", "/lists")) == 2  # once per user
    assert cache.has("user:u1:mailchimp:status")
