from __future__ import annotations

from typing import Sequence
from urllib.parse import urlsplit

from loguru import logger


def _normalize_origin(origin: str) -> str:
    parsed = urlsplit(origin.strip())
    if not parsed.scheme or not parsed.netloc:
        return origin.strip().lower().rstrip("/")
    return f"{parsed.scheme.lower()}://{parsed.netloc.lower()}"


def is_allowed_origin(origin: str, allowed: Sequence[str]) -> bool:
    """
    Check a browser `Origin` header against the configured allow-list.

    An empty list or a `*` entry allows everything. Entries are full origins
    (`https://app.example.com`) or host wildcards (`*.example.com`, matching
    any subdomain over any scheme).
    """
    if not allowed or "*" in allowed:
        return True
    normalized = _normalize_origin(origin)
    host = (urlsplit(normalized).hostname or "").lower()
    for entry in allowed:
        entry = entry.strip()
        if entry.startswith("*."):
            suffix = entry[1:].lower()
            if host.endswith(suffix):
                return True
            continue
        if _normalize_origin(entry) == normalized:
            return True
    logger.debug("Origin {} not in allow-list", normalized)
    return False
