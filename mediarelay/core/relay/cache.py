from __future__ import annotations

import re
import threading
import time
from collections import OrderedDict
from typing import Callable, Mapping, Optional, Protocol
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

from loguru import logger

from mediarelay.config import EDGE_CACHE_MAX_ENTRIES
from .types import CacheEntry

_MAX_AGE_RE = re.compile(r"(?:^|[,\s])(?:s-maxage|max-age)\s*=\s*\"?(\d+)", re.I)


class EdgeCache(Protocol):
    async def get(self, key: str) -> Optional[CacheEntry]: ...

    async def put(self, key: str, entry: CacheEntry) -> None: ...


def cache_key(request_url: str) -> str:
    """
    Build the canonical cache key for an inbound proxy request URL.

    Scheme and host are lower-cased, the fragment is dropped and query
    parameters are sorted so equivalent requests share an entry.
    """
    parsed = urlsplit(request_url)
    query = urlencode(sorted(parse_qsl(parsed.query, keep_blank_values=True)))
    return urlunsplit(
        (parsed.scheme.lower(), parsed.netloc.lower(), parsed.path or "/", query, "")
    )


def ttl_from_headers(headers: Mapping[str, str]) -> Optional[int]:
    """
    Return the lifetime in seconds announced by `Cache-Control`, if any.

    `no-store`/`no-cache`/`private` yield 0 (never cache).
    """
    value = ""
    for k, v in headers.items():
        if k.lower() == "cache-control":
            value = v
            break
    if not value:
        return None
    lowered = value.lower()
    if "no-store" in lowered or "no-cache" in lowered or "private" in lowered:
        return 0
    match = _MAX_AGE_RE.search(value)
    if not match:
        return None
    return int(match.group(1))


class MemoryEdgeCache:
    """
    In-memory edge cache honoring `Cache-Control: max-age` of stored entries.
    """

    def __init__(
        self,
        max_entries: int,
        *,
        default_ttl: int = 0,
        clock: Callable[[], float] = time.monotonic,
    ):
        """
        Create a thread-safe in-memory edge cache.

        Parameters:
            max_entries (int): Upper bound on stored entries; the oldest entry is evicted first.
            default_ttl (int): Lifetime for entries without a `max-age`; 0 means such entries are not stored.
            clock (Callable[[], float]): Monotonic time source.
        """
        self._max_entries = max(1, max_entries)
        self._default_ttl = default_ttl
        self._clock = clock
        self._data: "OrderedDict[str, tuple[float, CacheEntry]]" = OrderedDict()
        self._lock = threading.Lock()

    async def get(self, key: str) -> Optional[CacheEntry]:
        logger.trace("Edge cache lookup for {}", key)
        now = self._clock()
        with self._lock:
            item = self._data.get(key)
            if item is None:
                logger.trace("Edge cache miss for {}", key)
                return None
            expires_at, entry = item
            if now >= expires_at:
                logger.debug("Edge cache entry expired for {}", key)
                self._data.pop(key, None)
                return None
            return entry

    async def put(self, key: str, entry: CacheEntry) -> None:
        ttl = ttl_from_headers(entry.headers)
        if ttl is None:
            ttl = self._default_ttl
        if ttl <= 0:
            logger.trace("Edge cache skip (not cacheable) for {}", key)
            return
        with self._lock:
            self._data.pop(key, None)
            self._data[key] = (self._clock() + ttl, entry)
            while len(self._data) > self._max_entries:
                evicted, _ = self._data.popitem(last=False)
                logger.trace("Edge cache evicted {}", evicted)
        logger.debug("Edge cache stored {} ({} bytes, ttl={}s)", key, len(entry.body), ttl)

    def __len__(self) -> int:
        with self._lock:
            return len(self._data)

    def clear(self) -> None:
        with self._lock:
            self._data.clear()


EDGE_CACHE = MemoryEdgeCache(EDGE_CACHE_MAX_ENTRIES)
