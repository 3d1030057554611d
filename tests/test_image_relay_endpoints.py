import time

import httpx

from conftest import drip_transport, patch_async_client, upstream_hits
from mediarelay.core.relay import CacheEntry
from mediarelay.core.relay.fetcher import BROWSER_USER_AGENT


def test_image_miss_then_hit(client, upstream, edge_cache):
    params = {"url": "http://upstream/poster.png"}

    first = client.get("/api/proxy/image", params=params)
    assert first.status_code == 200
    assert first.content == b"\x89PNG\r\n\x1a\n"
    assert first.headers["content-type"] == "image/png"
    assert first.headers["x-cache"] == "MISS"
    assert first.headers["vary"] == "Accept-Encoding"
    assert (
        first.headers["cache-control"]
        == "public, max-age=604800, stale-while-revalidate=86400"
    )
    assert len(edge_cache) == 1

    second = client.get("/api/proxy/image", params=params)
    assert second.status_code == 200
    assert second.content == first.content
    assert second.headers["x-cache"] == "HIT"
    assert second.headers["content-type"] == "image/png"
    assert len(upstream_hits(upstream, "/poster.png")) == 1


def test_image_cache_is_scoped_to_proxy_url(client, upstream):
    client.get("/api/proxy/image", params={"url": "http://upstream/poster.png"})
    resp = client.get("/image", params={"url": "http://upstream/poster.png"})
    assert resp.headers["x-cache"] == "MISS"
    assert len(upstream_hits(upstream, "/poster.png")) == 2


def test_image_dev_mode_bypasses_cache(make_client, upstream, edge_cache):
    with make_client(dev_mode=True) as c:
        for _ in range(2):
            resp = c.get("/api/proxy/image", params={"url": "http://upstream/poster.png"})
            assert resp.status_code == 200
            assert resp.headers["x-cache"] == "MISS"
            assert resp.headers["cache-control"] == "no-cache, no-store"
    assert len(edge_cache) == 0
    assert len(upstream_hits(upstream, "/poster.png")) == 2


def test_image_dev_mode_skips_origin_check(make_client, upstream):
    with make_client(dev_mode=True, allowed_origins=("https://app.example.com",)) as c:
        resp = c.get(
            "/api/proxy/image",
            params={"url": "http://upstream/poster.png"},
            headers={"Origin": "https://evil.example.net"},
        )
    assert resp.status_code == 200


def test_image_default_content_type(client, upstream):
    resp = client.get("/api/proxy/image", params={"url": "http://upstream/untyped-image"})
    assert resp.status_code == 200
    assert resp.headers["content-type"] == "image/jpeg"


def test_image_upstream_error_is_500(client, upstream, edge_cache):
    resp = client.get("/api/proxy/image", params={"url": "http://upstream/missing"})
    assert resp.status_code == 500
    assert resp.json() == {"success": False, "error": "Failed to fetch image: 404"}
    assert len(edge_cache) == 0


def test_image_network_error_is_500(make_client, monkeypatch):
    def _refuse(request):
        raise httpx.ConnectError("connection refused", request=request)

    patch_async_client(monkeypatch, httpx.MockTransport(_refuse))
    with make_client() as c:
        resp = c.get("/api/proxy/image", params={"url": "http://upstream/poster.png"})
    assert resp.status_code == 500
    assert resp.json() == {"success": False, "error": "Failed to proxy image"}


def test_image_timeout_is_500(make_client, upstream):
    with make_client(image_timeout=0.2) as c:
        resp = c.get("/api/proxy/image", params={"url": "http://upstream/slow"})
    assert resp.status_code == 500
    assert resp.json()["error"] == "Failed to proxy image"


def test_image_slow_body_is_500(make_client, monkeypatch, edge_cache):
    patch_async_client(
        monkeypatch, drip_transport("image/png", [b"\x89", b"P", b"N", b"G"])
    )
    with make_client(image_timeout=0.5) as c:
        started = time.monotonic()
        resp = c.get("/api/proxy/image", params={"url": "http://upstream/poster.png"})
        elapsed = time.monotonic() - started
    assert resp.status_code == 500
    assert resp.json() == {"success": False, "error": "Failed to proxy image"}
    assert elapsed < 1.4
    assert len(edge_cache) == 0


def test_image_sends_browser_headers(client, upstream):
    client.get("/api/proxy/image", params={"url": "http://upstream/poster.png"})
    sent = upstream_hits(upstream, "/poster.png")[0][2]
    assert sent["user-agent"] == BROWSER_USER_AGENT
    assert sent["accept"].startswith("image/")
    assert "referer" not in sent


def test_image_hotlink_referer(make_client, upstream):
    with make_client(hotlink_referers={"upstream": "https://movie.douban.com/"}) as c:
        c.get("/api/proxy/image", params={"url": "http://upstream/poster.png"})
    sent = upstream_hits(upstream, "/poster.png")[0][2]
    assert sent["referer"] == "https://movie.douban.com/"


def test_image_validation_errors(client, upstream):
    resp = client.get("/api/proxy/image")
    assert resp.status_code == 400
    assert resp.json() == {"success": False, "error": "Image URL is required"}

    resp = client.get("/api/proxy/image", params={"url": "http://upstream/" + "a" * 4000})
    assert resp.status_code == 400
    assert resp.json()["error"] == "URL is too long"

    resp = client.get("/api/proxy/image", params={"url": "not a url"})
    assert resp.status_code == 400
    assert resp.json()["error"] == "Invalid URL"
    assert upstream.state.requests == []


def test_image_blocks_dns_rebinding(client, upstream):
    for target in ("http://rebind.example/a.png", "http://mixed.example/a.png"):
        resp = client.get("/api/proxy/image", params={"url": target})
        assert resp.status_code == 403
        assert resp.json()["error"] == "Blocked URL"
    assert upstream.state.requests == []


def test_image_rate_limited(make_client, upstream):
    with make_client(image_rate_limit=2) as c:
        params = {"url": "http://upstream/poster.png"}
        assert c.get("/api/proxy/image", params=params).status_code == 200
        assert c.get("/api/proxy/image", params=params).status_code == 200
        resp = c.get("/api/proxy/image", params=params)
    assert resp.status_code == 429
    assert resp.json() == {
        "success": False,
        "error": "Too many requests, please try again later",
    }


def test_image_forbidden_origin(make_client, upstream):
    with make_client(allowed_origins=("*.example.com",)) as c:
        denied = c.get(
            "/api/proxy/image",
            params={"url": "http://upstream/poster.png"},
            headers={"Origin": "https://example.net"},
        )
        allowed = c.get(
            "/api/proxy/image",
            params={"url": "http://upstream/poster.png"},
            headers={"Origin": "https://www.example.com"},
        )
    assert denied.status_code == 403
    assert denied.json()["error"] == "Forbidden"
    assert allowed.status_code == 200


class _BrokenCache:
    def __init__(self):
        self.puts = 0

    async def get(self, key):
        raise ConnectionError("cache backend down")

    async def put(self, key, entry: CacheEntry):
        self.puts += 1
        raise ConnectionError("cache backend down")


def test_image_cache_failures_never_fail_the_request(upstream, monkeypatch):
    from fastapi.testclient import TestClient

    from conftest import fake_blocked_check
    from mediarelay.api.proxy import get_image_relay
    from mediarelay.core.relay import ImageRelay, MemoryRateLimiter, RelaySettings
    from mediarelay.main import app

    broken = _BrokenCache()
    relay = ImageRelay(
        RelaySettings(),
        cache=broken,
        rate_limiter=MemoryRateLimiter(),
        blocked_check=fake_blocked_check,
    )
    app.dependency_overrides[get_image_relay] = lambda: relay
    try:
        with TestClient(app) as c:
            resp = c.get("/api/proxy/image", params={"url": "http://upstream/poster.png"})
    finally:
        app.dependency_overrides.clear()
    assert resp.status_code == 200
    assert resp.headers["x-cache"] == "MISS"
    assert broken.puts == 1
