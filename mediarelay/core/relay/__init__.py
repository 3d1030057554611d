from .types import (
    AdmissionFailure,
    CacheEntry,
    FetchAttempt,
    MediaKind,
    ProxyRequestContext,
    Verdict,
)
from .errors import RelayError, error_payload
from .settings import RelaySettings
from .guard import admit
from .ssrf import BlockVerdict, is_blocked_target_with_dns
from .origins import is_allowed_origin
from .ratelimit import RATE_LIMITER, MemoryRateLimiter, RateLimiter
from .cache import EDGE_CACHE, EdgeCache, MemoryEdgeCache, cache_key
from .background import BackgroundScheduler, ResponseBackgroundScheduler
from .hls import rewrite_hls_playlist, rewrite_manifest
from .image import ImageRelay
from .stream import StreamRelay, cors_headers, preflight_response

__all__ = [
    "AdmissionFailure",
    "CacheEntry",
    "FetchAttempt",
    "MediaKind",
    "ProxyRequestContext",
    "Verdict",
    "RelayError",
    "error_payload",
    "RelaySettings",
    "admit",
    "BlockVerdict",
    "is_blocked_target_with_dns",
    "is_allowed_origin",
    "RATE_LIMITER",
    "MemoryRateLimiter",
    "RateLimiter",
    "EDGE_CACHE",
    "EdgeCache",
    "MemoryEdgeCache",
    "cache_key",
    "BackgroundScheduler",
    "ResponseBackgroundScheduler",
    "rewrite_hls_playlist",
    "rewrite_manifest",
    "ImageRelay",
    "StreamRelay",
    "cors_headers",
    "preflight_response",
]
