from __future__ import annotations

import threading
import time
from collections import defaultdict, deque
from dataclasses import dataclass
from typing import Callable, Protocol

from loguru import logger


@dataclass(frozen=True)
class RateLimitDecision:
    allowed: bool
    remaining: int = 0


class RateLimiter(Protocol):
    async def try_acquire(
        self, key: str, limit: int, window_seconds: int
    ) -> RateLimitDecision: ...


class MemoryRateLimiter:
    """
    In-process sliding-window rate limiter.

    Each key keeps the timestamps of its admitted requests inside the current
    window; a request is admitted while fewer than `limit` remain.
    """

    def __init__(
        self, *, clock: Callable[[], float] = time.monotonic, sweep_every: int = 1024
    ):
        self._clock = clock
        self._hits: dict[str, deque[float]] = defaultdict(deque)
        self._lock = threading.Lock()
        self._sweep_every = max(1, sweep_every)
        self._calls = 0

    def _sweep(self, now: float, window_seconds: int) -> None:
        stale = [
            key
            for key, hits in self._hits.items()
            if not hits or now - hits[-1] > window_seconds
        ]
        for key in stale:
            self._hits.pop(key, None)
        if stale:
            logger.trace("Rate limiter swept {} idle keys", len(stale))

    async def try_acquire(
        self, key: str, limit: int, window_seconds: int
    ) -> RateLimitDecision:
        now = self._clock()
        with self._lock:
            self._calls += 1
            if self._calls % self._sweep_every == 0:
                self._sweep(now, window_seconds)
            hits = self._hits[key]
            while hits and now - hits[0] >= window_seconds:
                hits.popleft()
            if len(hits) >= limit:
                return RateLimitDecision(allowed=False, remaining=0)
            hits.append(now)
            return RateLimitDecision(allowed=True, remaining=limit - len(hits))

    def reset(self) -> None:
        with self._lock:
            self._hits.clear()


async def acquire_or_allow(
    limiter: RateLimiter, key: str, *, limit: int, window_seconds: int
) -> RateLimitDecision:
    """
    Ask the limiter for a slot, admitting the request when the backend fails.
    """
    try:
        return await limiter.try_acquire(key, limit, window_seconds)
    except Exception as exc:
        logger.warning("Rate limiter unavailable for {} (fail-open): {}", key, exc)
        return RateLimitDecision(allowed=True, remaining=limit)


RATE_LIMITER = MemoryRateLimiter()
