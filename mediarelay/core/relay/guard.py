from __future__ import annotations

from typing import Awaitable, Callable, Optional, Sequence
from urllib.parse import unquote, urlsplit

from loguru import logger

from mediarelay.utils.logger import redact_url
from .ssrf import BlockVerdict, is_blocked_target_with_dns
from .types import AdmissionFailure, ProxyRequestContext, Verdict

BlockedCheck = Callable[[str], Awaitable[BlockVerdict]]


def _host_without_port(value: Optional[str]) -> str:
    if not value:
        return ""
    value = value.strip().lower()
    if value.startswith("["):
        return value[1:].split("]", 1)[0]
    if value.count(":") == 1:
        return value.split(":", 1)[0]
    return value


def is_http_url(candidate: str) -> bool:
    """
    Return whether a string is an absolute http(s) URL with a non-empty host.
    """
    try:
        parsed = urlsplit(candidate)
        host = parsed.hostname
        _ = parsed.port  # raises on out-of-range ports
    except ValueError:
        return False
    if any(ch.isspace() for ch in candidate):
        return False
    return parsed.scheme.lower() in ("http", "https") and bool(host)


def is_self_reference(
    candidate: str, context: ProxyRequestContext, self_routes: Sequence[str]
) -> bool:
    """
    Detect candidates that would make the relay fetch from itself.

    Matches when the candidate host equals the inbound request host, its
    `Host` header or the public proxy origin, or when the candidate
    path/query mentions one of the relay's own routes. The route match is
    case-insensitive and applied to the once-decoded path and query.
    """
    parsed = urlsplit(candidate)
    target_host = (parsed.hostname or "").lower()
    own_hosts = {
        _host_without_port(urlsplit(context.url).netloc),
        _host_without_port(context.host),
    }
    if context.proxy_origin:
        own_hosts.add((urlsplit(context.proxy_origin).hostname or "").lower())
    own_hosts.discard("")
    if target_host and target_host in own_hosts:
        return True

    haystacks = (
        parsed.path.lower(),
        parsed.query.lower(),
        unquote(parsed.path).lower(),
        unquote(parsed.query).lower(),
    )
    for route in self_routes:
        needle = route.lower()
        if any(needle in hay for hay in haystacks):
            return True
    return False


async def admit(
    candidate: Optional[str],
    max_len: int,
    context: ProxyRequestContext,
    *,
    self_routes: Sequence[str],
    blocked_check: BlockedCheck = is_blocked_target_with_dns,
) -> Verdict:
    """
    Validate a candidate upstream URL before anything touches the network.

    Checks run cheapest first: presence, length, shape, self-reference, and
    finally the DNS-backed SSRF verdict.

    Parameters:
        candidate (str | None): The raw `url` query parameter.
        max_len (int): Maximum accepted length for this route.
        context (ProxyRequestContext): The inbound request.
        self_routes (Sequence[str]): Route prefixes that identify this relay.
        blocked_check (BlockedCheck): SSRF verdict provider.

    Returns:
        Verdict: `ok=True`, or `ok=False` with the failing reason.
    """
    if not candidate:
        return Verdict.refused(AdmissionFailure.MISSING)
    if len(candidate) > max_len:
        logger.debug("Refusing URL of {} chars (max {})", len(candidate), max_len)
        return Verdict.refused(AdmissionFailure.TOO_LONG)
    if not is_http_url(candidate):
        return Verdict.refused(AdmissionFailure.NOT_HTTP_URL)
    if is_self_reference(candidate, context, self_routes):
        logger.warning("Refusing self-referential URL {}", redact_url(candidate))
        return Verdict.refused(AdmissionFailure.SELF_REFERENCE)
    block = await blocked_check(candidate)
    if block.blocked:
        logger.warning(
            "Refusing blocked URL {} ({})", redact_url(candidate), block.reason
        )
        return Verdict.refused(AdmissionFailure.BLOCKED)
    logger.trace("Admitted {}", redact_url(candidate))
    return Verdict.admitted()
