"""
Tests for the shared BGG request gate.
"""
import asyncio

import pytest

from playsync.services.bgg.errors import RateLimited
from playsync.services.bgg.rate_limiter import RateLimiter, get_rate_limiter


def _limiter(clock, min_interval=2.0, wait_timeout=300.0):
    return RateLimiter(min_interval=min_interval, wait_timeout=wait_timeout, clock=clock, sleep=clock.sleep)


@pytest.mark.asyncio
async def test_first_call_passes_immediately(clock):
    limiter = _limiter(clock)
    await limiter.acquire()
    assert clock.sleeps == []


@pytest.mark.asyncio
async def test_consecutive_calls_are_spaced_by_min_interval(clock):
    limiter = _limiter(clock)
    await limiter.acquire()
    await limiter.acquire()
    await limiter.acquire()
    assert clock.sleeps == [2.0, 2.0]


@pytest.mark.asyncio
async def test_no_wait_when_interval_already_elapsed(clock):
    limiter = _limiter(clock)
    await limiter.acquire()
    clock.now += 5
    await limiter.acquire()
    assert clock.sleeps == []


@pytest.mark.asyncio
async def test_concurrent_callers_are_serialized(clock):
    limiter = _limiter(clock)
    passed = []

    async def call(i):
        await limiter.acquire()
        passed.append((i, clock.now))

    await asyncio.gather(*(call(i) for i in range(4)))

    times = [t for _, t in passed]
    assert times == sorted(times)
    assert all(b - a >= 2.0 for a, b in zip(times, times[1:]))


@pytest.mark.asyncio
async def test_wait_longer_than_timeout_raises_rate_limited(clock):
    limiter = _limiter(clock, min_interval=10.0, wait_timeout=5.0)
    await limiter.acquire()

    with pytest.raises(RateLimited) as exc_info:
        await limiter.acquire()
    assert exc_info.value.retry_after == pytest.approx(10.0)
    assert clock.sleeps == []


@pytest.mark.asyncio
async def test_timed_out_waiter_leaves_the_gate_free(clock):
    limiter = _limiter(clock, min_interval=0.0, wait_timeout=0.05)
    await limiter._lock.acquire()

    with pytest.raises(RateLimited, match="request gate"):
        await limiter.acquire()

    limiter._lock.release()
    await asyncio.sleep(0)
    assert not limiter._lock.locked()
    await limiter.acquire()
    assert not limiter._lock.locked()


@pytest.mark.asyncio
async def test_gate_granted_as_the_wait_gives_up_is_handed_back(clock):
    limiter = _limiter(clock)
    acquiring = asyncio.ensure_future(limiter._lock.acquire())
    await acquiring
    assert limiter._lock.locked()

    limiter._abandon(acquiring)

    assert not limiter._lock.locked()


@pytest.mark.asyncio
async def test_defer_pushes_next_slot_for_everyone(clock):
    limiter = _limiter(clock, min_interval=0.0)
    await limiter.acquire()
    limiter.defer(30)
    await limiter.acquire()
    assert clock.sleeps == [30.0]


@pytest.mark.asyncio
async def test_defer_never_pulls_the_slot_earlier(clock):
    limiter = _limiter(clock, min_interval=20.0)
    await limiter.acquire()
    limiter.defer(1)
    await limiter.acquire()
    assert clock.sleeps == [20.0]


def test_process_wide_limiter_is_a_singleton():
    assert get_rate_limiter() is get_rate_limiter()
