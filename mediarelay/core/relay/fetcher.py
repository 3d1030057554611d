from __future__ import annotations

import math
from typing import AsyncIterator, Mapping, Optional
from urllib.parse import urlsplit

import anyio
import httpx
from loguru import logger

from mediarelay.utils.logger import redact_url
from .errors import UpstreamTimeout, UpstreamUnavailable
from .types import FetchAttempt

BROWSER_USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
)
IMAGE_ACCEPT = "image/avif,image/webp,image/apng,image/svg+xml,image/*,*/*;q=0.8"

_ALLOWED_HEADERS = {
    "content-type",
    "content-length",
    "content-range",
    "content-encoding",
    "accept-ranges",
    "etag",
    "last-modified",
    "cache-control",
}
_STREAM_CHUNK_SIZE = 64 * 1024


def url_origin(url: str) -> str:
    parsed = urlsplit(url)
    return f"{parsed.scheme}://{parsed.netloc}"


def image_request_headers(url: str, hotlink_referers: Mapping[str, str]) -> dict[str, str]:
    """
    Outbound headers for an image fetch.

    A `Referer` is only sent when the target host contains one of the
    configured hotlink-protected provider needles.
    """
    headers = {"User-Agent": BROWSER_USER_AGENT, "Accept": IMAGE_ACCEPT}
    host = (urlsplit(url).hostname or "").lower()
    for needle, referer in hotlink_referers.items():
        if needle in host:
            logger.trace("Using hotlink referer {} for {}", referer, host)
            headers["Referer"] = referer
            break
    return headers


def stream_request_headers(url: str, range_header: Optional[str]) -> dict[str, str]:
    """
    Outbound headers for a stream fetch.

    `Referer` and `Origin` claim the target's own origin; the inbound
    `Range` header is forwarded verbatim.
    """
    origin = url_origin(url)
    headers = {
        "User-Agent": BROWSER_USER_AGENT,
        "Referer": origin + "/",
        "Origin": origin,
    }
    if range_header:
        headers["Range"] = range_header
    return headers


def filter_headers(headers: Mapping[str, str]) -> dict[str, str]:
    """
    Filter upstream headers to a safe pass-through allowlist.
    """
    logger.trace("Filtering upstream headers: {}", list(headers.keys()))
    out: dict[str, str] = {}
    for k, v in headers.items():
        if k.lower() in _ALLOWED_HEADERS:
            out[k] = v
    return out


def _build_async_client() -> httpx.AsyncClient:
    """
    Build an AsyncClient for upstream fetches without env proxies.
    """
    logger.trace("Building upstream AsyncClient")
    timeout = httpx.Timeout(30.0, connect=10.0, read=60.0, write=30.0, pool=30.0)
    return httpx.AsyncClient(
        timeout=timeout,
        follow_redirects=True,
        trust_env=False,
    )


async def open_upstream(attempt: FetchAttempt) -> tuple[httpx.Response, httpx.AsyncClient]:
    """
    Send one fetch attempt and return the streaming response with its client.

    The whole exchange up to the response headers runs inside a cancel scope
    of `attempt.timeout` seconds; when it fires the in-flight request is
    cancelled and the client closed.

    Raises:
        UpstreamTimeout: The attempt exceeded its timeout.
        UpstreamUnavailable: Connection-level failure (DNS, TLS, reset, too many redirects).
    """
    logger.trace(
        "Opening upstream {} {} (timeout={}s)",
        attempt.method,
        redact_url(attempt.url),
        attempt.timeout,
    )
    client = _build_async_client()
    try:
        request = client.build_request(
            attempt.method, attempt.url, headers=dict(attempt.headers)
        )
        with anyio.fail_after(attempt.timeout):
            response = await client.send(
                request, stream=True, follow_redirects=attempt.follow_redirects
            )
    except (TimeoutError, httpx.TimeoutException) as exc:
        await client.aclose()
        logger.error("Timeout fetching {}", redact_url(attempt.url))
        raise UpstreamTimeout("Upstream server timed out") from exc
    except httpx.HTTPError as exc:
        await client.aclose()
        logger.warning("Upstream request failed for {}: {}", redact_url(attempt.url), exc)
        raise UpstreamUnavailable("Upstream request failed") from exc
    except BaseException:
        await client.aclose()
        raise
    logger.trace(
        "Upstream response status={} for {}", response.status_code, redact_url(attempt.url)
    )
    return response, client


async def close_upstream(response: httpx.Response, client: httpx.AsyncClient) -> None:
    await response.aclose()
    await client.aclose()


def attempt_deadline(attempt: FetchAttempt) -> float:
    """
    Absolute `anyio.current_time()` by which `attempt`, body included, must finish.
    """
    return anyio.current_time() + attempt.timeout


async def read_upstream(
    response: httpx.Response,
    client: httpx.AsyncClient,
    *,
    deadline: Optional[float] = None,
) -> bytes:
    """
    Buffer the (decoded) upstream body and release the connection.

    With a `deadline` the read is cancelled once it passes, so a body that
    trickles in slowly cannot outlive the attempt's timeout.

    Raises:
        UpstreamTimeout: The deadline passed, or the transport timed out mid-body.
        UpstreamUnavailable: The connection failed while reading the body.
    """
    try:
        url = redact_url(str(response.request.url))
        with anyio.CancelScope(
            deadline=math.inf if deadline is None else deadline
        ) as scope:
            body = await response.aread()
        if scope.cancelled_caught:
            logger.error("Timeout reading body from {}", url)
            raise UpstreamTimeout("Upstream server timed out")
        return body
    except httpx.TimeoutException as exc:
        logger.error("Timeout reading body from {}", url)
        raise UpstreamTimeout("Upstream server timed out") from exc
    except httpx.HTTPError as exc:
        logger.warning("Upstream body read failed for {}: {}", url, exc)
        raise UpstreamUnavailable("Upstream request failed") from exc
    finally:
        await close_upstream(response, client)


def streaming_body(
    response: httpx.Response, client: httpx.AsyncClient
) -> AsyncIterator[bytes]:
    """
    Create an async generator that relays raw upstream bytes and closes resources.

    Bytes are passed through undecoded so a forwarded `Content-Encoding` and
    `Content-Length` still describe the body.
    """
    logger.trace("Streaming body start (status={})", response.status_code)

    async def _gen():
        try:
            async for chunk in response.aiter_raw(chunk_size=_STREAM_CHUNK_SIZE):
                yield chunk
        finally:
            await close_upstream(response, client)

    return _gen()
