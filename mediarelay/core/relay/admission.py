from __future__ import annotations

from typing import Callable, Optional, Sequence

from loguru import logger

from .errors import BlockedTarget, ForbiddenOrigin, InvalidTarget, RateLimited
from .guard import BlockedCheck, admit
from .origins import is_allowed_origin
from .ratelimit import RateLimiter, acquire_or_allow
from .settings import RelaySettings
from .ssrf import is_blocked_target_with_dns
from .types import AdmissionFailure, ProxyRequestContext

OriginCheck = Callable[[str, Sequence[str]], bool]

_MESSAGES = {
    AdmissionFailure.MISSING: "URL is required",
    AdmissionFailure.TOO_LONG: "URL is too long",
    AdmissionFailure.NOT_HTTP_URL: "Invalid URL",
    AdmissionFailure.SELF_REFERENCE: "Self-proxy is not allowed",
    AdmissionFailure.BLOCKED: "Blocked URL",
}


class AdmissionPipeline:
    """
    Guard, origin allow-list and rate limit, in that order, for one route.

    Everything here completes before the relay issues any outbound request.
    """

    def __init__(
        self,
        settings: RelaySettings,
        *,
        namespace: str,
        max_url_length: int,
        rate_limit: int,
        rate_limiter: RateLimiter,
        blocked_check: BlockedCheck = is_blocked_target_with_dns,
        origin_check: OriginCheck = is_allowed_origin,
        missing_message: Optional[str] = None,
    ):
        self.settings = settings
        self.namespace = namespace
        self.max_url_length = max_url_length
        self.rate_limit = rate_limit
        self.rate_limiter = rate_limiter
        self.blocked_check = blocked_check
        self.origin_check = origin_check
        self._messages = dict(_MESSAGES)
        if missing_message:
            self._messages[AdmissionFailure.MISSING] = missing_message

    async def run(self, candidate: Optional[str], context: ProxyRequestContext) -> str:
        """
        Admit a candidate URL or raise the matching `RelayError`.

        Returns:
            str: The admitted upstream URL.
        """
        verdict = await admit(
            candidate,
            self.max_url_length,
            context,
            self_routes=self.settings.self_routes,
            blocked_check=self.blocked_check,
        )
        if not verdict.ok:
            message = self._messages[verdict.reason]
            if verdict.reason is AdmissionFailure.BLOCKED:
                raise BlockedTarget(message)
            raise InvalidTarget(message)

        # Media elements do not always send Origin; only a present one is checked.
        if not self.settings.dev_mode and context.origin:
            if not self.origin_check(context.origin, self.settings.allowed_origins):
                logger.warning("Rejected {} request from origin {}", self.namespace, context.origin)
                raise ForbiddenOrigin("Forbidden")

        key = f"{self.namespace}:{context.client_id}"
        decision = await acquire_or_allow(
            self.rate_limiter,
            key,
            limit=self.rate_limit,
            window_seconds=self.settings.rate_limit_window_seconds,
        )
        if not decision.allowed:
            logger.warning("Rate limit exceeded for {}", key)
            raise RateLimited("Too many requests, please try again later")
        return candidate
