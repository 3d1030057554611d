import sys
from pathlib import Path

import anyio
import httpx
import pytest
from fastapi import FastAPI, Request, Response
from fastapi.responses import JSONResponse
from fastapi.testclient import TestClient

repo_root = Path(__file__).resolve().parents[1]
if str(repo_root) not in sys.path:
    sys.path.insert(0, str(repo_root))

from mediarelay.core.relay import (  # noqa: E402
    ImageRelay,
    MemoryEdgeCache,
    MemoryRateLimiter,
    RelaySettings,
    StreamRelay,
    is_blocked_target_with_dns,
)

PUBLIC_ADDRESS = "93.184.216.34"

# Hostnames the fake resolver knows; anything else fails to resolve.
FAKE_DNS = {
    "upstream": [PUBLIC_ADDRESS],
    "cdn.example.com": [PUBLIC_ADDRESS],
    "img.doubanio.com": [PUBLIC_ADDRESS],
    "rebind.example": ["10.0.0.5"],
    "mixed.example": [PUBLIC_ADDRESS, "192.168.1.20"],
    "mapped.example": ["::ffff:127.0.0.1"],
    "v6.example": ["2606:4700:4700::1111"],
}

EXAMPLE_MANIFEST = (
    "#EXTM3U\n"
    "#EXT-X-VERSION:3\n"
    "#EXT-X-TARGETDURATION:6\n"
    '#EXT-X-KEY:METHOD=AES-128,URI="key.bin",IV=0x1234\n'
    "#EXTINF:6.0,\n"
    "seg001.ts\n"
    "#EXTINF:6.0,\n"
    "/video/seg002.ts\n"
    "#EXT-X-ENDLIST\n"
)


async def fake_resolver(host: str, port: int) -> list[str]:
    """
    Resolve hostnames from a static table so tests never touch the network.
    """
    if host in FAKE_DNS:
        return list(FAKE_DNS[host])
    raise OSError(f"[Errno -2] Name or service not known: {host}")


async def fake_blocked_check(url: str):
    return await is_blocked_target_with_dns(url, resolver=fake_resolver)


def _build_upstream_app() -> FastAPI:
    """
    Create an in-memory FastAPI app that simulates the origins the relay fetches from.

    Every request is recorded on `app.state.requests` as a
    `(method, path, headers)` tuple so tests can assert what went out.
    """
    app = FastAPI()
    app.state.requests = []

    @app.middleware("http")
    async def _record(request: Request, call_next):
        app.state.requests.append(
            (request.method, request.url.path, dict(request.headers))
        )
        return await call_next(request)

    @app.api_route("/ok", methods=["GET", "HEAD"])
    async def ok():
        return Response(content=b"ok", media_type="video/mp4")

    @app.get("/echo")
    async def echo(request: Request):
        """
        Return the headers the relay sent upstream as JSON.
        """
        return JSONResponse(dict(request.headers))

    @app.get("/range.mp4")
    async def range_handler(request: Request):
        """
        Serve a 10-byte payload, honoring the single range `bytes=0-4`.
        """
        payload = b"0123456789"
        if request.headers.get("range") == "bytes=0-4":
            return Response(
                content=payload[:5],
                status_code=206,
                headers={
                    "Content-Range": "bytes 0-4/10",
                    "Accept-Ranges": "bytes",
                },
                media_type="video/mp4",
            )
        return Response(
            content=payload,
            headers={"Accept-Ranges": "bytes"},
            media_type="video/mp4",
        )

    @app.get("/hotlinked/seg001.ts")
    async def hotlinked(request: Request):
        """
        Reject requests carrying a Referer, like a misconfigured anti-hotlink rule.
        """
        if "referer" in request.headers:
            return Response(content=b"forbidden", status_code=403, media_type="text/plain")
        return Response(content=b"\x47\x40\x00\x10", media_type="video/mp2t")

    @app.get("/hotlinked/slow.ts")
    async def hotlinked_slow(request: Request):
        """
        Reject a Referer, then hang on the retry that drops it.
        """
        if "referer" in request.headers:
            return Response(content=b"forbidden", status_code=403, media_type="text/plain")
        await anyio.sleep(5)
        return Response(content=b"late", media_type="video/mp2t")

    @app.get("/forbidden")
    async def forbidden():
        return Response(content=b"forbidden", status_code=403, media_type="text/plain")

    @app.get("/missing")
    async def missing():
        return Response(content=b"not found", status_code=404, media_type="text/plain")

    @app.get("/slow")
    async def slow():
        await anyio.sleep(5)
        return Response(content=b"late", media_type="video/mp4")

    @app.api_route("/video/stream.m3u8", methods=["GET", "HEAD"])
    async def manifest():
        return Response(
            content=EXAMPLE_MANIFEST.encode("utf-8"),
            media_type="application/vnd.apple.mpegurl",
        )

    @app.get("/video/bom.m3u8")
    async def manifest_with_bom():
        return Response(
            content=b"\xef\xbb\xbf" + EXAMPLE_MANIFEST.encode("utf-8"),
            media_type="application/vnd.apple.mpegurl",
        )

    @app.get("/live/index")
    async def manifest_by_type():
        return Response(
            content=b"#EXTM3U\n#EXTINF:2.0,\nchunk-1.m4s\n",
            media_type="application/x-mpegURL",
        )

    @app.get("/poster.png")
    async def poster():
        return Response(content=b"\x89PNG\r\n\x1a\n", media_type="image/png")

    @app.get("/untyped-image")
    async def untyped_image():
        return Response(content=b"\xff\xd8\xff\xe0")

    return app


def patch_async_client(monkeypatch, transport: httpx.AsyncBaseTransport) -> None:
    """
    Point the fetcher's client factory at the given transport.
    """

    def _factory():
        return httpx.AsyncClient(
            transport=transport,
            follow_redirects=True,
            trust_env=False,
        )

    monkeypatch.setattr("mediarelay.core.relay.fetcher._build_async_client", _factory)


class DripStream(httpx.AsyncByteStream):
    """
    Response body that yields one chunk every `delay` seconds.
    """

    def __init__(self, chunks: list[bytes], delay: float):
        self.chunks = chunks
        self.delay = delay

    async def __aiter__(self):
        for chunk in self.chunks:
            await anyio.sleep(self.delay)
            yield chunk


def drip_transport(
    content_type: str, chunks: list[bytes], delay: float = 0.4
) -> httpx.MockTransport:
    """
    MockTransport that answers headers at once and then trickles the body.
    """

    async def _handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(
            200,
            headers={"content-type": content_type},
            stream=DripStream(chunks, delay),
        )

    return httpx.MockTransport(_handler)


def upstream_hits(upstream: FastAPI, path: str) -> list[tuple[str, str, dict]]:
    return [r for r in upstream.state.requests if r[1] == path]


@pytest.fixture
def upstream(monkeypatch):
    app = _build_upstream_app()
    patch_async_client(monkeypatch, httpx.ASGITransport(app=app))
    return app


@pytest.fixture
def edge_cache():
    return MemoryEdgeCache(64)


@pytest.fixture
def rate_limiter():
    return MemoryRateLimiter()


@pytest.fixture
def make_client(upstream, edge_cache, rate_limiter):
    """
    Build a TestClient for the relay app with test settings and in-memory collaborators.
    """
    from mediarelay.main import app
    from mediarelay.api.proxy import get_image_relay, get_settings, get_stream_relay

    clients: list[TestClient] = []

    def _make(**overrides) -> TestClient:
        values = {
            "image_timeout": 1.0,
            "stream_timeout": 1.0,
            "stream_retry_timeout": 1.0,
        }
        values.update(overrides)
        settings = RelaySettings(**values)
        app.dependency_overrides[get_settings] = lambda: settings
        app.dependency_overrides[get_image_relay] = lambda: ImageRelay(
            settings,
            cache=edge_cache,
            rate_limiter=rate_limiter,
            blocked_check=fake_blocked_check,
        )
        app.dependency_overrides[get_stream_relay] = lambda: StreamRelay(
            settings,
            rate_limiter=rate_limiter,
            blocked_check=fake_blocked_check,
        )
        c = TestClient(app)
        clients.append(c)
        return c

    yield _make
    for c in clients:
        c.close()
    app.dependency_overrides.clear()


@pytest.fixture
def client(make_client):
    with make_client() as c:
        yield c
