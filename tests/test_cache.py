"""
Response cache tests: HIT/MISS behaviour through the HTTP stack, key
canonicalisation, TTL expiry, invalidation after writes, fail-open
behaviour with a broken backend, and the in-memory backend on its own.
"""
import asyncio

import pytest
from httpx import ASGITransport, AsyncClient

from app.cache import CacheManager, MemoryCacheBackend
from app.middleware import CacheRule, build_cache_key
from app.services import post_service


class FakeClock:
    def __init__(self, now: float = 1000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


class BrokenBackend:
    name = "broken"

    async def connect(self):
        raise ConnectionError("cache down")

    async def disconnect(self):
        raise ConnectionError("cache down")

    async def get(self, key):
        raise ConnectionError("cache down")

    async def set(self, key, value, ttl=None):
        raise ConnectionError("cache down")

    async def delete_pattern(self, pattern):
        raise ConnectionError("cache down")

    async def clear(self):
        raise ConnectionError("cache down")


# ---------------------------------------------------------------------------
# HTTP behaviour
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_second_identical_request_is_a_hit(async_client: AsyncClient, create_category, create_post):
    await create_category("Tech")
    await create_post("Cached", "Tech")

    first = await async_client.get("/api/v1/posts", params={"status": "published"})
    second = await async_client.get("/api/v1/posts", params={"status": "published"})
    assert first.headers["X-Cache"] == "MISS"
    assert second.headers["X-Cache"] == "HIT"
    assert second.json() == first.json()
    assert second.headers["X-Query-Count"] == "0"


@pytest.mark.asyncio
async def test_hit_skips_the_handler(async_client: AsyncClient, monkeypatch):
    """Two identical reads inside the TTL reach the store once."""
    calls = []
    real_list_posts = post_service.list_posts

    async def spy(db, filters):
        calls.append(filters)
        return await real_list_posts(db, filters)

    monkeypatch.setattr(post_service, "list_posts", spy)

    await async_client.get("/api/v1/posts", params={"limit": 5})
    await async_client.get("/api/v1/posts", params={"limit": 5})
    assert len(calls) == 1

    await async_client.get("/api/v1/posts", params={"limit": 6})
    assert len(calls) == 2


@pytest.mark.asyncio
async def test_parameter_order_shares_an_entry(async_client: AsyncClient):
    await async_client.get("/api/v1/posts?status=published&limit=5")
    resp = await async_client.get("/api/v1/posts?limit=5&status=published")
    assert resp.headers["X-Cache"] == "HIT"


@pytest.mark.asyncio
async def test_errors_are_not_cached(async_client: AsyncClient):
    first = await async_client.get("/api/v1/posts", params={"sort_by": "nope"})
    second = await async_client.get("/api/v1/posts", params={"sort_by": "nope"})
    assert first.status_code == second.status_code == 400
    assert second.headers["X-Cache"] == "MISS"

    await async_client.get("/api/v1/posts/404")
    resp = await async_client.get("/api/v1/posts/404")
    assert resp.status_code == 404
    assert resp.headers["X-Cache"] == "MISS"


@pytest.mark.asyncio
async def test_writes_are_never_cached(async_client: AsyncClient, create_category, create_post):
    await create_category("Tech")
    post = await create_post("Viewed", "Tech")
    resp = await async_client.post(f"/api/v1/posts/{post['id']}/view")
    assert "X-Cache" not in resp.headers


@pytest.mark.asyncio
async def test_uncached_routes_have_no_cache_header(async_client: AsyncClient):
    resp = await async_client.get("/api/v1/users")
    assert "X-Cache" not in resp.headers


@pytest.mark.asyncio
async def test_write_invalidates_listing(async_client: AsyncClient, create_category, create_post):
    await create_category("Tech")
    await create_post("First", "Tech")

    resp = await async_client.get("/api/v1/posts")
    assert resp.json()["pagination"]["total"] == 1
    assert (await async_client.get("/api/v1/posts")).headers["X-Cache"] == "HIT"

    await create_post("Second", "Tech")
    resp = await async_client.get("/api/v1/posts")
    assert resp.headers["X-Cache"] == "MISS"
    assert resp.json()["pagination"]["total"] == 2


@pytest.mark.asyncio
async def test_update_invalidates_detail(async_client: AsyncClient, create_category, create_post, admin_headers):
    await create_category("Tech")
    post = await create_post("Before", "Tech")

    await async_client.get(f"/api/v1/posts/{post['id']}")
    await async_client.patch(f"/api/v1/posts/{post['id']}", json={"title": "After"}, headers=admin_headers)
    resp = await async_client.get(f"/api/v1/posts/{post['id']}")
    assert resp.headers["X-Cache"] == "MISS"
    assert resp.json()["title"] == "After"


@pytest.mark.asyncio
async def test_entries_expire_after_ttl(app_factory):
    """With a one-second TTL: MISS, HIT, then MISS again once it lapses."""
    app = app_factory(CACHE_TTL_LIST=1)
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        first = await client.get("/api/v1/posts", params={"limit": 3})
        second = await client.get("/api/v1/posts", params={"limit": 3})
        await asyncio.sleep(1.1)
        third = await client.get("/api/v1/posts", params={"limit": 3})

    assert first.headers["X-Cache"] == "MISS"
    assert second.headers["X-Cache"] == "HIT"
    assert third.headers["X-Cache"] == "MISS"


@pytest.mark.asyncio
async def test_broken_cache_fails_open(app_factory):
    app = app_factory()
    app.state.cache.backend = BrokenBackend()
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        first = await client.get("/api/v1/posts")
        second = await client.get("/api/v1/posts")

    assert first.status_code == second.status_code == 200
    assert second.headers["X-Cache"] == "MISS"
    stats = app.state.cache.stats
    assert stats["errors"] >= 4
    assert stats["hits"] == 0


@pytest.mark.asyncio
async def test_metrics_report_cache_stats(async_client: AsyncClient):
    await async_client.get("/api/v1/posts")
    await async_client.get("/api/v1/posts")
    info = (await async_client.get("/api/v1/metrics")).json()["cache_info"]
    assert info["backend"] == "memory"
    assert info["hits"] == 1
    assert info["misses"] == 1
    assert info["hit_rate"] == 50.0


# ---------------------------------------------------------------------------
# Keys and rules
# ---------------------------------------------------------------------------

def test_cache_key_is_canonical():
    assert build_cache_key("/api/v1/posts", b"b=2&a=1") == build_cache_key("/api/v1/posts/", "a=1&b=2")
    assert build_cache_key("/api/v1/posts", b"") == "response:/api/v1/posts"
    assert build_cache_key("/api/v1/posts", b"tags=a,b") != build_cache_key("/api/v1/posts", b"tags=b,a")


def test_cache_rule_matches_whole_path():
    rule = CacheRule(r"/api/v1/posts/\d+", 60)
    assert rule.matches("/api/v1/posts/12")
    assert not rule.matches("/api/v1/posts/12/related")
    assert not rule.matches("/api/v1/posts/popular")


# ---------------------------------------------------------------------------
# CacheManager / MemoryCacheBackend
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_memory_backend_expires_passively():
    clock = FakeClock()
    backend = MemoryCacheBackend(clock=clock)
    await backend.set("k", "v", ttl=10)
    assert await backend.get("k") == "v"

    clock.now += 10
    assert await backend.get("k") is None
    assert len(backend) == 0


@pytest.mark.asyncio
async def test_memory_backend_sweep_bounds_size():
    clock = FakeClock()
    backend = MemoryCacheBackend(max_entries=2, clock=clock)
    await backend.set("old", "1", ttl=5)
    await backend.set("a", "2", ttl=100)
    clock.now += 6
    await backend.set("b", "3", ttl=100)
    assert len(backend) == 2
    assert await backend.get("old") is None

    await backend.set("c", "4", ttl=100)
    assert len(backend) == 2
    assert await backend.get("a") is None
    assert await backend.get("c") == "4"


@pytest.mark.asyncio
async def test_invalidate_prefix_only_touches_matching_paths():
    cache = CacheManager(MemoryCacheBackend())
    await cache.set("response:/api/v1/posts?page=1", {"x": 1})
    await cache.set("response:/api/v1/posts/3", {"x": 2})
    await cache.set("response:/api/v1/users", {"x": 3})

    removed = await cache.invalidate_prefix("/api/v1/posts")
    assert removed == 2
    assert await cache.get("response:/api/v1/users") == {"x": 3}
    assert await cache.get("response:/api/v1/posts/3") is None


@pytest.mark.asyncio
async def test_manager_swallows_backend_errors(caplog):
    cache = CacheManager(BrokenBackend())
    await cache.connect()
    assert await cache.get("response:/x") is None
    await cache.set("response:/x", {"a": 1})
    assert await cache.delete_pattern("response:*") == 0
    await cache.clear()
    assert cache.stats["errors"] == 5
    assert "unavailable" in caplog.text
