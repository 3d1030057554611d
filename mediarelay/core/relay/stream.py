from __future__ import annotations

import codecs
from typing import Mapping, Optional
from urllib.parse import urlsplit

import httpx
from fastapi.responses import Response, StreamingResponse
from loguru import logger

from mediarelay.utils.logger import redact_url
from .admission import AdmissionPipeline, OriginCheck
from .errors import InternalError, MethodNotAllowed, RelayError
from .fetcher import (
    close_upstream,
    filter_headers,
    read_upstream,
    stream_request_headers,
    streaming_body,
)
from .guard import BlockedCheck
from .hls import HLS_MEDIA_TYPE, rewrite_manifest
from .origins import is_allowed_origin
from .ratelimit import RATE_LIMITER, RateLimiter
from .retry import fetch_relayable
from .settings import RelaySettings
from .ssrf import is_blocked_target_with_dns
from .types import FetchAttempt, MediaKind, ProxyRequestContext

STREAM_NAMESPACE = "rl:proxy:stream"
RELAYED_METHODS = ("GET", "HEAD")

_HLS_CONTENT_TYPES = {
    "application/vnd.apple.mpegurl",
    "application/x-mpegurl",
    "audio/mpegurl",
    "audio/x-mpegurl",
}
_SEGMENT_SUFFIXES = (".ts", ".m4s")
_SEGMENT_CONTENT_TYPES = {"video/mp2t", "video/iso.segment"}
_CONTAINER_SUFFIXES = (".mp4", ".mkv", ".webm")
_CONTAINER_CONTENT_TYPES = {
    "video/mp4",
    "video/webm",
    "video/x-matroska",
    "video/quicktime",
}

_CACHE_POLICY = {
    MediaKind.MANIFEST: "public, max-age=10, stale-while-revalidate=30",
    MediaKind.SEGMENT: "public, max-age=86400, immutable",
    MediaKind.CONTAINER: "public, max-age=3600",
}
# Headers invalidated by rewriting the manifest body.
_MANIFEST_DROPPED = {"content-length", "content-encoding", "content-range", "etag"}


def cors_headers() -> dict[str, str]:
    """
    Permissive CORS headers forced onto every relayed stream response.
    """
    return {
        "Access-Control-Allow-Origin": "*",
        "Access-Control-Allow-Methods": "GET, HEAD, OPTIONS",
        "Access-Control-Expose-Headers": "Content-Length, Content-Range, Content-Type, Accept-Ranges",
    }


def preflight_response() -> Response:
    return Response(status_code=204, headers=cors_headers())


def _media_type(content_type: Optional[str]) -> str:
    return (content_type or "").split(";")[0].strip().lower()


def classify_media(url: str, content_type: Optional[str]) -> MediaKind:
    """
    Classify upstream content from its content type and URL path.

    Manifests are recognised by an HLS content type or `.m3u8` anywhere in
    the URL; segments and containers by content type or path suffix.
    """
    mime = _media_type(content_type)
    path = urlsplit(url).path.lower()
    if mime in _HLS_CONTENT_TYPES or ".m3u8" in url.lower():
        return MediaKind.MANIFEST
    if mime in _SEGMENT_CONTENT_TYPES or path.endswith(_SEGMENT_SUFFIXES):
        return MediaKind.SEGMENT
    if mime in _CONTAINER_CONTENT_TYPES or path.endswith(_CONTAINER_SUFFIXES):
        return MediaKind.CONTAINER
    return MediaKind.OTHER


def _ensure_content_type(headers: dict[str, str], default: str) -> dict[str, str]:
    if not any(k.lower() == "content-type" for k in headers):
        headers["Content-Type"] = default
    return headers


def _set_header(headers: dict[str, str], name: str, value: str) -> None:
    """
    Replace a header case-insensitively.
    """
    for key in [k for k in headers if k.lower() == name.lower()]:
        del headers[key]
    headers[name] = value


def response_headers(upstream: Mapping[str, str], kind: MediaKind) -> dict[str, str]:
    """
    Allow-listed upstream headers plus forced CORS and the per-kind cache policy.

    `MediaKind.OTHER` keeps whatever `Cache-Control` upstream sent.
    """
    headers = filter_headers(upstream)
    if kind is MediaKind.MANIFEST:
        headers = {k: v for k, v in headers.items() if k.lower() not in _MANIFEST_DROPPED}
        _set_header(headers, "Content-Type", HLS_MEDIA_TYPE)
    else:
        _ensure_content_type(headers, "application/octet-stream")
    policy = _CACHE_POLICY.get(kind)
    if policy:
        _set_header(headers, "Cache-Control", policy)
    headers.update(cors_headers())
    return headers


def decode_manifest(body: bytes, charset: Optional[str]) -> str:
    """
    Decode a manifest body, dropping a UTF-8 byte order mark.
    """
    charset = charset or "utf-8"
    if codecs.lookup(charset).name == "utf-8":
        charset = "utf-8-sig"
    return body.decode(charset, errors="replace")


class StreamRelay:
    """
    Relay video, segments and HLS manifests: Guard, RateLimiter, Fetcher,
    RetryPolicy, then either the manifest rewriter or a live passthrough.
    """

    def __init__(
        self,
        settings: RelaySettings,
        *,
        rate_limiter: RateLimiter = RATE_LIMITER,
        blocked_check: BlockedCheck = is_blocked_target_with_dns,
        origin_check: OriginCheck = is_allowed_origin,
    ):
        self.settings = settings
        self.admission = AdmissionPipeline(
            settings,
            namespace=STREAM_NAMESPACE,
            max_url_length=settings.stream_max_url_length,
            rate_limit=settings.stream_rate_limit,
            rate_limiter=rate_limiter,
            blocked_check=blocked_check,
            origin_check=origin_check,
        )

    async def handle(
        self, candidate: Optional[str], context: ProxyRequestContext
    ) -> Response:
        """
        Serve one stream request.

        Non-manifest bodies are never buffered: the upstream body is relayed
        chunk by chunk with its status (including `206`). Manifests are
        buffered, rewritten so every reference re-enters this relay, and
        returned as `200`.

        Raises:
            RelayError: Admission failures, `405` for unsupported methods,
                `502`/`504` from the fetch and retry policy, `500` otherwise.
        """
        method = context.method.upper()
        if method == "OPTIONS":
            return preflight_response()
        if method not in RELAYED_METHODS:
            raise MethodNotAllowed("Method not allowed")

        url = await self.admission.run(candidate, context)
        logger.info("Stream {} {}", method, redact_url(url))

        try:
            attempt = FetchAttempt(
                method=method,
                url=url,
                headers=stream_request_headers(url, context.range),
                timeout=self.settings.stream_timeout,
            )
            response, client, deadline = await fetch_relayable(
                attempt, retry_timeout=self.settings.stream_retry_timeout
            )
            kind = classify_media(url, response.headers.get("content-type"))
            if kind is MediaKind.MANIFEST:
                return await self._manifest(url, context, response, client, deadline)
            return await self._passthrough(method, kind, response, client)
        except RelayError:
            raise
        except Exception as exc:
            logger.exception("Stream proxy error: {}", exc)
            raise InternalError("Failed to proxy stream") from exc

    async def _manifest(
        self,
        url: str,
        context: ProxyRequestContext,
        response: httpx.Response,
        client: httpx.AsyncClient,
        deadline: float,
    ) -> Response:
        headers = response_headers(response.headers, MediaKind.MANIFEST)
        if context.method.upper() == "HEAD":
            await close_upstream(response, client)
            return Response(content=b"", status_code=200, headers=headers)

        body = await read_upstream(response, client, deadline=deadline)
        playlist_text = decode_manifest(body, response.encoding)
        rewritten = rewrite_manifest(
            playlist_text, url, context.proxy_origin, route_path=context.route_path
        )
        out_bytes = rewritten.encode("utf-8")
        logger.success("Rewrote HLS manifest ({} bytes)", len(out_bytes))
        return Response(content=out_bytes, status_code=200, headers=headers)

    async def _passthrough(
        self,
        method: str,
        kind: MediaKind,
        response: httpx.Response,
        client: httpx.AsyncClient,
    ) -> Response:
        headers = response_headers(response.headers, kind)
        if method == "HEAD":
            await close_upstream(response, client)
            return Response(content=b"", status_code=response.status_code, headers=headers)
        logger.debug(
            "Streaming {} response (status={})", kind.value, response.status_code
        )
        return StreamingResponse(
            streaming_body(response, client),
            status_code=response.status_code,
            headers=headers,
        )
