from __future__ import annotations

from typing import Optional

from fastapi.responses import Response
from loguru import logger

from mediarelay.utils.logger import redact_url
from .admission import AdmissionPipeline, OriginCheck
from .background import BackgroundScheduler
from .cache import EDGE_CACHE, EdgeCache, cache_key
from .errors import (
    ImageFetchFailed,
    InternalError,
    RelayError,
    UpstreamTimeout,
    UpstreamUnavailable,
)
from .fetcher import (
    attempt_deadline,
    close_upstream,
    image_request_headers,
    open_upstream,
    read_upstream,
)
from .guard import BlockedCheck
from .origins import is_allowed_origin
from .ratelimit import RATE_LIMITER, RateLimiter
from .retry import is_relayable_status
from .settings import RelaySettings
from .ssrf import is_blocked_target_with_dns
from .types import CacheEntry, FetchAttempt, ProxyRequestContext

IMAGE_NAMESPACE = "rl:proxy:image"
DEFAULT_IMAGE_TYPE = "image/jpeg"


class ImageRelay:
    """
    Relay images through the edge cache: Guard, RateLimiter, Cache, Fetcher.
    """

    def __init__(
        self,
        settings: RelaySettings,
        *,
        cache: EdgeCache = EDGE_CACHE,
        rate_limiter: RateLimiter = RATE_LIMITER,
        blocked_check: BlockedCheck = is_blocked_target_with_dns,
        origin_check: OriginCheck = is_allowed_origin,
    ):
        self.settings = settings
        self.cache = cache
        self.admission = AdmissionPipeline(
            settings,
            namespace=IMAGE_NAMESPACE,
            max_url_length=settings.image_max_url_length,
            rate_limit=settings.image_rate_limit,
            rate_limiter=rate_limiter,
            blocked_check=blocked_check,
            origin_check=origin_check,
            missing_message="Image URL is required",
        )

    def _cache_control(self) -> str:
        if self.settings.dev_mode:
            return "no-cache, no-store"
        return (
            f"public, max-age={self.settings.image_cache_max_age}, "
            f"stale-while-revalidate={self.settings.image_cache_swr}"
        )

    async def _cached(self, key: str) -> Optional[Response]:
        try:
            entry = await self.cache.get(key)
        except Exception as exc:
            logger.warning("Edge cache lookup failed for {}: {}", key, exc)
            return None
        if entry is None:
            return None
        logger.debug("Image cache hit for {}", key)
        headers = dict(entry.headers)
        headers["X-Cache"] = "HIT"
        return Response(content=entry.body, status_code=entry.status_code, headers=headers)

    async def handle(
        self,
        candidate: Optional[str],
        context: ProxyRequestContext,
        scheduler: BackgroundScheduler,
    ) -> Response:
        """
        Serve one image request.

        On a cache hit no outbound request is made. On a miss the image is
        fetched and fully buffered, returned with `X-Cache: MISS`, and
        persisted by a background task that runs after the response is sent.
        Dev mode skips the cache in both directions.

        Raises:
            RelayError: Admission failures (400/403/429), upstream failures
                (500) and unexpected errors (500).
        """
        url = await self.admission.run(candidate, context)
        use_cache = not self.settings.dev_mode
        key = cache_key(context.url)

        try:
            if use_cache:
                cached = await self._cached(key)
                if cached is not None:
                    return cached

            attempt = FetchAttempt(
                method="GET",
                url=url,
                headers=image_request_headers(url, self.settings.hotlink_referers),
                timeout=self.settings.image_timeout,
            )
            deadline = attempt_deadline(attempt)
            try:
                response, client = await open_upstream(attempt)
            except (UpstreamTimeout, UpstreamUnavailable) as exc:
                raise ImageFetchFailed("Failed to proxy image") from exc

            if not is_relayable_status(response.status_code):
                status = response.status_code
                await close_upstream(response, client)
                logger.error("Image upstream error {}: {}", status, redact_url(url))
                raise ImageFetchFailed(f"Failed to fetch image: {status}")

            try:
                body = await read_upstream(response, client, deadline=deadline)
            except (UpstreamTimeout, UpstreamUnavailable) as exc:
                raise ImageFetchFailed("Failed to proxy image") from exc
            headers = {
                "Content-Type": response.headers.get("content-type") or DEFAULT_IMAGE_TYPE,
                "Cache-Control": self._cache_control(),
                "Vary": "Accept-Encoding",
            }
            if use_cache:
                scheduler.schedule_background(
                    self.cache.put, key, CacheEntry(body=body, headers=dict(headers))
                )
            logger.info("Proxied image {} ({} bytes)", redact_url(url), len(body))
            return Response(
                content=body, status_code=200, headers={**headers, "X-Cache": "MISS"}
            )
        except RelayError:
            raise
        except Exception as exc:
            logger.exception("Image proxy error: {}", exc)
            raise InternalError("Failed to proxy image") from exc
