from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, BackgroundTasks, Depends, Query, Request
from fastapi.responses import Response
from loguru import logger

from mediarelay.core.relay import (
    ImageRelay,
    ProxyRequestContext,
    RelaySettings,
    ResponseBackgroundScheduler,
    StreamRelay,
)

router = APIRouter()

# Registered so unsupported methods reach the relay and get the JSON envelope.
_STREAM_METHODS = ["GET", "HEAD", "OPTIONS", "POST", "PUT", "PATCH", "DELETE"]


def get_settings() -> RelaySettings:
    return RelaySettings.from_config()


def get_image_relay(settings: RelaySettings = Depends(get_settings)) -> ImageRelay:
    return ImageRelay(settings)


def get_stream_relay(settings: RelaySettings = Depends(get_settings)) -> StreamRelay:
    return StreamRelay(settings)


def _first_header_value(request: Request, name: str) -> Optional[str]:
    raw = request.headers.get(name)
    if not raw:
        return None
    value = raw.split(",", 1)[0].strip()
    return value or None


def _client_id(request: Request) -> str:
    """
    Identify the caller for rate limiting: first proxy hop, Cloudflare's
    connecting IP, then the socket peer.
    """
    forwarded = _first_header_value(request, "x-forwarded-for")
    if forwarded:
        return forwarded
    cf_ip = _first_header_value(request, "cf-connecting-ip")
    if cf_ip:
        return cf_ip
    if request.client and request.client.host:
        return request.client.host
    return "anonymous"


def _proxy_origin(request: Request, settings: RelaySettings) -> str:
    """
    Public origin that rewritten manifests point back to.
    """
    if settings.public_base_url:
        return settings.public_base_url.rstrip("/")
    proto = _first_header_value(request, "x-forwarded-proto") or request.url.scheme
    host = (
        _first_header_value(request, "x-forwarded-host")
        or request.headers.get("host")
        or request.url.netloc
    )
    return f"{proto}://{host}"


def _build_context(request: Request, settings: RelaySettings) -> ProxyRequestContext:
    mount = request.url.path.rsplit("/", 1)[0]
    context = ProxyRequestContext(
        url=str(request.url),
        host=request.headers.get("host"),
        origin=request.headers.get("origin"),
        method=request.method,
        range=request.headers.get("range"),
        client_id=_client_id(request),
        proxy_origin=_proxy_origin(request, settings),
        route_path=f"{mount}/stream",
    )
    logger.trace(
        "Proxy context method={} client={} origin={}",
        context.method,
        context.client_id,
        context.origin or "<none>",
    )
    return context


@router.get("/image")
async def proxy_image(
    request: Request,
    background_tasks: BackgroundTasks,
    url: Optional[str] = Query(default=None),
    settings: RelaySettings = Depends(get_settings),
    relay: ImageRelay = Depends(get_image_relay),
) -> Response:
    """
    Relay an image, served from the edge cache when possible.
    """
    context = _build_context(request, settings)
    scheduler = ResponseBackgroundScheduler(background_tasks)
    return await relay.handle(url, context, scheduler)


@router.api_route("/stream", methods=_STREAM_METHODS)
async def proxy_stream(
    request: Request,
    url: Optional[str] = Query(default=None),
    settings: RelaySettings = Depends(get_settings),
    relay: StreamRelay = Depends(get_stream_relay),
) -> Response:
    """
    Relay video bytes or a rewritten HLS manifest.
    """
    context = _build_context(request, settings)
    return await relay.handle(url, context)
