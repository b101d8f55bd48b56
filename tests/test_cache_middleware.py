import asyncio
from datetime import timedelta

import pytest
from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse
from fastapi.testclient import TestClient

from newsletter.middleware.cache import (
    CacheInvalidationPatterns,
    CacheKeyGenerators,
    cache_response,
    invalidate_cache,
)
from newsletter.services.cache import ExpiringCache, KeyPrefix


def run_async(coro):
    return asyncio.run(coro)


class SpyCache(ExpiringCache):
    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        self.invalidated: list = []

    def invalidate(self, pattern):
        self.invalidated.append(pattern)
        return super().invalidate(pattern)


def build_app(cache: ExpiringCache, **cache_kwargs) -> tuple[FastAPI, dict]:
    app = FastAPI()
    app.state.cache = cache
    calls = {"items": 0, "broken": 0}

    @app.middleware("http")
    async def bind_user(request: Request, call_next):
        request.state.user_id = request.headers.get("X-User-Id")
        return await call_next(request)

    @app.api_route("/items", methods=["GET", "POST"])
    @cache_response(ttl=timedelta(minutes=1), **cache_kwargs)
    async def items(request: Request):
        calls["items"] += 1
        return {"items": [1, 2], "calls": calls["items"]}

    @app.get("/broken")
    @cache_response(**cache_kwargs)
    async def broken(request: Request):
        calls["broken"] += 1
        return JSONResponse(status_code=500, content={"error": "db down"})

    @app.post("/items/ok")
    @invalidate_cache([KeyPrefix("http")])
    async def write_ok(request: Request):
        return {"saved": True}

    @app.post("/items/failed")
    @invalidate_cache([KeyPrefix("http")])
    async def write_failed(request: Request):
        return JSONResponse(status_code=500, content={"error": "write failed"})

    @app.post("/items/rejected")
    @invalidate_cache([KeyPrefix("http")])
    async def write_rejected(request: Request):
        raise HTTPException(status_code=400, detail="bad payload")

    @app.post("/items/bad-pattern")
    @invalidate_cache(["([", KeyPrefix("http")])
    async def write_bad_pattern(request: Request):
        return {"saved": True}

    @app.get("/items/read-only")
    @invalidate_cache([KeyPrefix("http")])
    async def read_only(request: Request):
        return {"read": True}

    return app, calls


def test_miss_then_hit():
    cache = ExpiringCache()
    app, calls = build_app(cache)
    client = TestClient(app)

    first = client.get("/items")
    second = client.get("/items")

    assert first.status_code == second.status_code == 200
    assert first.headers["X-Cache"] == "MISS"
    assert second.headers["X-Cache"] == "HIT"
    assert first.json() == second.json() == {"items": [1, 2], "calls": 1}
    assert calls["items"] == 1


def test_default_key_includes_user_path_and_sorted_query():
    cache = ExpiringCache()
    app, _ = build_app(cache)
    client = TestClient(app)

    client.get("/items?b=2&a=1")
    client.get("/items", headers={"X-User-Id": "u1"})

    assert sorted(cache.keys()) == [
        'http:anonymous:/items:{"a":"1","b":"2"}',
        "http:u1:/items:{}",
    ]


def test_repeated_query_parameters_get_distinct_keys():
    cache = ExpiringCache()
    app, calls = build_app(cache)
    client = TestClient(app)

    both = client.get("/items?tag=a&tag=b")
    single = client.get("/items?tag=b")

    assert both.headers["X-Cache"] == single.headers["X-Cache"] == "MISS"
    assert calls["items"] == 2
    assert sorted(cache.keys()) == [
        'http:anonymous:/items:{"tag":"b"}',
        'http:anonymous:/items:{"tag":["a","b"]}',
    ]


def test_users_do_not_share_entries():
    cache = ExpiringCache()
    app, calls = build_app(cache)
    client = TestClient(app)

    client.get("/items", headers={"X-User-Id": "u1"})
    response = client.get("/items", headers={"X-User-Id": "u2"})

    assert response.headers["X-Cache"] == "MISS"
    assert calls["items"] == 2


def test_false_condition_bypasses_cache():
    cache = ExpiringCache()
    app, calls = build_app(cache, condition=lambda request: False)
    client = TestClient(app)

    first = client.get("/items")
    second = client.get("/items")

    assert "X-Cache" not in first.headers
    assert "X-Cache" not in second.headers
    assert calls["items"] == 2
    assert len(cache) == 0


def test_non_get_requests_pass_through():
    cache = ExpiringCache()
    app, calls = build_app(cache)
    client = TestClient(app)

    response = client.post("/items")

    assert response.status_code == 200
    assert "X-Cache" not in response.headers
    assert len(cache) == 0
    assert calls["items"] == 1


def test_error_responses_are_cached_by_default():
    cache = ExpiringCache()
    app, calls = build_app(cache)
    client = TestClient(app)

    client.get("/broken")
    replay = client.get("/broken")

    assert replay.status_code == 500
    assert replay.headers["X-Cache"] == "HIT"
    assert replay.json() == {"error": "db down"}
    assert calls["broken"] == 1


def test_error_responses_can_be_excluded():
    cache = ExpiringCache()
    app, calls = build_app(cache, cache_error_responses=False)
    client = TestClient(app)

    client.get("/broken")
    second = client.get("/broken")

    assert second.status_code == 500
    assert second.headers["X-Cache"] == "MISS"
    assert calls["broken"] == 2


def test_successful_write_invalidates():
    cache = SpyCache()
    app, calls = build_app(cache)
    client = TestClient(app)
    client.get("/items")

    response = client.post("/items/ok")

    assert response.status_code == 200
    assert cache.invalidated == [KeyPrefix("http")]
    assert client.get("/items").headers["X-Cache"] == "MISS"
    assert calls["items"] == 2


def test_failed_write_leaves_cache_untouched():
    cache = SpyCache()
    app, _ = build_app(cache)
    client = TestClient(app)
    client.get("/items")

    response = client.post("/items/failed")

    assert response.status_code == 500
    assert cache.invalidated == []
    assert client.get("/items").headers["X-Cache"] == "HIT"


def test_raised_http_error_skips_invalidation():
    cache = SpyCache()
    app, _ = build_app(cache)
    client = TestClient(app)
    client.get("/items")

    response = client.post("/items/rejected")

    assert response.status_code == 400
    assert cache.invalidated == []
    assert len(cache) == 1


def test_invalidation_error_does_not_fail_the_request():
    cache = SpyCache()
    app, _ = build_app(cache)
    client = TestClient(app)
    client.get("/items")

    response = client.post("/items/bad-pattern")

    assert response.status_code == 200
    assert response.json() == {"saved": True}
    # the malformed pattern is skipped, the next one still runs
    assert cache.invalidated == ["([", KeyPrefix("http")]
    assert len(cache) == 0


def test_reads_never_invalidate():
    cache = SpyCache()
    app, _ = build_app(cache)
    client = TestClient(app)

    assert client.get("/items/read-only").status_code == 200
    assert cache.invalidated == []


def test_missing_request_parameter_is_rejected():
    @cache_response(ExpiringCache())
    async def handler():
        return {}

    with pytest.raises(TypeError):
        run_async(handler())


class FakeRequest:
    """Just enough of a Request for key generators and pattern builders."""

    def __init__(self, user_id=None, **query):
        self.query_params = query
        self.state = type("State", (), {"user_id": user_id})()


def test_route_key_generators():
    request = FakeRequest("u1", page="2", period="90")
    assert CacheKeyGenerators.subscriber_list(request) == "subscribers:u1:page:2:limit:100"
    assert CacheKeyGenerators.newsletter_list(request) == "newsletters:u1:list"
    assert CacheKeyGenerators.analytics_growth(request) == "analytics:u1:growth:90"
    assert CacheKeyGenerators.settings(FakeRequest()) == "settings:anonymous"


def test_subscriber_patterns_cover_derived_keys():
    cache = ExpiringCache()
    for key in [
        "subscribers:u1:page:1:limit:100",
        "analytics:u1:growth:30",
        "user:u1:subscriber:count",
        "user:u1:analytics:growth:30",
        "user:u1:settings",
        "subscribers:u10:page:1:limit:100",
    ]:
        cache.set(key, 1)

    for pattern in CacheInvalidationPatterns.subscriber(FakeRequest("u1")):
        cache.invalidate(pattern)

    assert sorted(cache.keys()) == [
        "subscribers:u10:page:1:limit:100",
        "user:u1:settings",
    ]
