from __future__ import annotations

from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Iterable, Mapping, Optional


class AdmissionFailure(str, Enum):
    """
    Reasons a candidate URL is refused before any network activity.
    """

    MISSING = "missing"
    TOO_LONG = "too_long"
    NOT_HTTP_URL = "not_http_url"
    SELF_REFERENCE = "self_reference"
    BLOCKED = "blocked"


@dataclass(frozen=True)
class Verdict:
    """
    Outcome of the URL admission guard.
    """

    ok: bool
    reason: Optional[AdmissionFailure] = None

    @classmethod
    def admitted(cls) -> "Verdict":
        return cls(ok=True)

    @classmethod
    def refused(cls, reason: AdmissionFailure) -> "Verdict":
        return cls(ok=False, reason=reason)


@dataclass(frozen=True)
class ProxyRequestContext:
    """
    Immutable view of the inbound proxy request.

    Only the pieces the relay needs are captured: its own URL and `Host`
    header (self-reference detection), `Origin` (allow-listing), the method
    and `Range` header (forwarded upstream), the client identity (rate-limit
    key) and the public origin that rewritten manifests point back to.
    """

    url: str
    host: Optional[str] = None
    origin: Optional[str] = None
    method: str = "GET"
    range: Optional[str] = None
    client_id: str = "anonymous"
    proxy_origin: str = ""
    route_path: str = "/stream"


@dataclass(frozen=True)
class FetchAttempt:
    """
    A single outbound request. The timeout doubles as its cancellation scope.
    """

    method: str
    url: str
    headers: Mapping[str, str] = field(default_factory=dict)
    timeout: float = 15.0
    follow_redirects: bool = True

    def without_headers(self, names: Iterable[str], *, timeout: float) -> "FetchAttempt":
        """
        Derive a fresh attempt that drops the named headers (case-insensitive).
        """
        drop = {n.lower() for n in names}
        headers = {k: v for k, v in self.headers.items() if k.lower() not in drop}
        return replace(self, headers=headers, timeout=timeout)


@dataclass(frozen=True)
class CacheEntry:
    """
    Fully buffered image response stored in the edge cache.
    """

    body: bytes
    headers: Mapping[str, str]
    status_code: int = 200


class MediaKind(str, Enum):
    """
    Coarse classification of relayed stream content driving cache policy.
    """

    MANIFEST = "manifest"
    SEGMENT = "segment"
    CONTAINER = "container"
    OTHER = "other"
