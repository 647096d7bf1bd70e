"""Sliding-window rate limiter tests."""

import asyncio

import pytest

from atelier.services.queue.rate_limiter import SharedRateLimiter, SlidingWindowRateLimiter


class FakeClock:
    def __init__(self):
        self.now = 100.0

    def __call__(self) -> float:
        return self.now


def test_window_allows_max_calls_then_reports_wait():
    clock = FakeClock()
    limiter = SlidingWindowRateLimiter(max_calls=2, duration_ms=1000, clock=clock)

    assert limiter.try_acquire() == 0.0
    clock.now += 0.25
    assert limiter.try_acquire() == 0.0

    assert limiter.try_acquire() == pytest.approx(0.75)


def test_slots_free_up_as_window_rolls():
    clock = FakeClock()
    limiter = SlidingWindowRateLimiter(max_calls=1, duration_ms=1000, clock=clock)
    limiter.try_acquire()

    clock.now += 1.0

    assert limiter.try_acquire() == 0.0


def test_zero_max_disables_limiter():
    limiter = SlidingWindowRateLimiter(max_calls=0, duration_ms=1000)

    assert not limiter.enabled
    assert all(limiter.try_acquire() == 0.0 for _ in range(100))


@pytest.mark.asyncio
async def test_acquire_waits_for_free_slot():
    limiter = SlidingWindowRateLimiter(max_calls=1, duration_ms=100)
    loop = asyncio.get_running_loop()

    started = loop.time()
    await limiter.acquire()
    await limiter.acquire()

    assert loop.time() - started >= 0.09


def test_release_returns_the_latest_slot():
    clock = FakeClock()
    limiter = SlidingWindowRateLimiter(max_calls=1, duration_ms=1000, clock=clock)
    limiter.try_acquire()

    limiter.release()

    assert limiter.try_acquire() == 0.0


@pytest.mark.asyncio
async def test_shared_window_spans_worker_processes(context):
    """Two limiters (one per process) draw from the same database window."""
    first = SharedRateLimiter(context.queue, "generate", max_calls=2, duration_ms=60_000)
    second = SharedRateLimiter(context.queue, "generate", max_calls=2, duration_ms=60_000)

    assert await first.try_acquire() == 0.0
    assert await second.try_acquire() == 0.0

    assert await second.try_acquire() > 59
    assert await first.try_acquire() > 59


@pytest.mark.asyncio
async def test_shared_window_is_per_job_type(context):
    generate = SharedRateLimiter(context.queue, "generate", max_calls=1, duration_ms=60_000)
    upscale = SharedRateLimiter(context.queue, "upscale", max_calls=1, duration_ms=60_000)

    assert await generate.try_acquire() == 0.0
    assert await upscale.try_acquire() == 0.0
    assert not await context.queue.is_paused("generate")


@pytest.mark.asyncio
async def test_shared_slots_expire_with_the_window(context):
    first = SharedRateLimiter(context.queue, "generate", max_calls=1, duration_ms=100)
    second = SharedRateLimiter(context.queue, "generate", max_calls=1, duration_ms=100)
    loop = asyncio.get_running_loop()

    await first.acquire()
    started = loop.time()
    await second.acquire()

    assert loop.time() - started >= 0.05


@pytest.mark.asyncio
async def test_concurrent_shared_acquisitions_never_exceed_the_limit(context):
    limiters = [
        SharedRateLimiter(context.queue, "generate", max_calls=3, duration_ms=60_000)
        for _ in range(6)
    ]

    waits = await asyncio.gather(*(limiter.try_acquire() for limiter in limiters))

    assert sum(1 for wait in waits if wait == 0.0) == 3
