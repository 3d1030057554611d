import anyio

from mediarelay.core.relay.ratelimit import MemoryRateLimiter, acquire_or_allow


class _Clock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


def test_sliding_window_limits_and_recovers():
    clock = _Clock()
    limiter = MemoryRateLimiter(clock=clock)

    async def _run():
        results = [
            (await limiter.try_acquire("rl:proxy:image:1.2.3.4", 3, 60)).allowed
            for _ in range(4)
        ]
        clock.now += 59
        still_blocked = (await limiter.try_acquire("rl:proxy:image:1.2.3.4", 3, 60)).allowed
        clock.now += 1
        recovered = await limiter.try_acquire("rl:proxy:image:1.2.3.4", 3, 60)
        return results, still_blocked, recovered

    results, still_blocked, recovered = anyio.run(_run)
    assert results == [True, True, True, False]
    assert still_blocked is False
    assert recovered.allowed is True
    assert recovered.remaining == 2


def test_keys_are_independent():
    limiter = MemoryRateLimiter()

    async def _run():
        a = await limiter.try_acquire("rl:proxy:stream:a", 1, 60)
        a2 = await limiter.try_acquire("rl:proxy:stream:a", 1, 60)
        b = await limiter.try_acquire("rl:proxy:stream:b", 1, 60)
        img = await limiter.try_acquire("rl:proxy:image:a", 1, 60)
        return a.allowed, a2.allowed, b.allowed, img.allowed

    assert anyio.run(_run) == (True, False, True, True)


def test_idle_keys_are_swept():
    clock = _Clock()
    limiter = MemoryRateLimiter(clock=clock, sweep_every=2)

    async def _run():
        await limiter.try_acquire("old", 5, 10)
        clock.now += 30
        await limiter.try_acquire("new", 5, 10)

    anyio.run(_run)
    assert "old" not in limiter._hits
    assert "new" in limiter._hits


def test_backend_failure_fails_open():
    class _Broken:
        async def try_acquire(self, key, limit, window_seconds):
            raise ConnectionError("redis down")

    async def _run():
        return await acquire_or_allow(
            _Broken(), "rl:proxy:image:x", limit=300, window_seconds=60
        )

    decision = anyio.run(_run)
    assert decision.allowed is True


def test_reset_clears_state():
    limiter = MemoryRateLimiter()

    async def _run():
        await limiter.try_acquire("k", 1, 60)
        limiter.reset()
        return await limiter.try_acquire("k", 1, 60)

    assert anyio.run(_run).allowed is True
