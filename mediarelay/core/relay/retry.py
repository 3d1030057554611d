from __future__ import annotations

import httpx
from loguru import logger

from mediarelay.utils.logger import redact_url
from .errors import UpstreamRejected
from .fetcher import attempt_deadline, close_upstream, open_upstream
from .types import FetchAttempt

RETRY_ON_STATUS = 403
_FORGED_HEADERS = ("Referer", "Origin")


def is_relayable_status(status_code: int) -> bool:
    """
    Return whether an upstream status may be relayed (2xx, including 206).
    """
    return 200 <= status_code < 300


async def fetch_with_referer_fallback(
    attempt: FetchAttempt, *, retry_timeout: float
) -> tuple[httpx.Response, httpx.AsyncClient, float]:
    """
    Fetch upstream, retrying once without forged `Referer`/`Origin` on a 403.

    Some origins reject a mismatching referer but accept none at all. The
    first attempt is fully closed before the retry is sent; timeouts are
    never retried and a second 403 is returned as-is.

    Returns:
        The response, its client and the deadline of the attempt that
        produced it, for bounding a buffered body read.
    """
    deadline = attempt_deadline(attempt)
    response, client = await open_upstream(attempt)
    if response.status_code != RETRY_ON_STATUS:
        return response, client, deadline

    logger.info(
        "403 with Referer, retrying without Referer: {}", redact_url(attempt.url)
    )
    await close_upstream(response, client)
    retry = attempt.without_headers(_FORGED_HEADERS, timeout=retry_timeout)
    deadline = attempt_deadline(retry)
    response, client = await open_upstream(retry)
    return response, client, deadline


async def fetch_relayable(
    attempt: FetchAttempt, *, retry_timeout: float
) -> tuple[httpx.Response, httpx.AsyncClient, float]:
    """
    Apply the retry policy and surface any remaining non-2xx status as `UpstreamRejected`.
    """
    response, client, deadline = await fetch_with_referer_fallback(
        attempt, retry_timeout=retry_timeout
    )
    if not is_relayable_status(response.status_code):
        status = response.status_code
        await close_upstream(response, client)
        logger.error("Upstream error {}: {}", status, redact_url(attempt.url))
        raise UpstreamRejected(f"Upstream server returned an error: {status}")
    return response, client, deadline
