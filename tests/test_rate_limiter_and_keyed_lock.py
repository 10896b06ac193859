import asyncio

import pytest

from utils import KeyedLock, RateLimiter, RetryHelper, format_duration, truncate_string


@pytest.mark.asyncio
async def test_disabled_limiter_never_waits():
    limiter = RateLimiter(0)
    assert not limiter.enabled
    assert await limiter.acquire() == 0.0
    assert await limiter.acquire() == 0.0


@pytest.mark.asyncio
async def test_limiter_spaces_calls_after_burst(monkeypatch):
    slept = []

    async def fake_sleep(seconds):
        slept.append(seconds)

    monkeypatch.setattr("utils.sleep", fake_sleep)
    limiter = RateLimiter(60, burst=2, name="test")

    assert await limiter.acquire() == 0.0
    assert await limiter.acquire() == 0.0
    waited = await limiter.acquire()
    assert waited == pytest.approx(1.0, abs=0.05)
    assert slept and slept[0] == pytest.approx(1.0, abs=0.05)


def test_retry_helper_backoff_is_capped():
    helper = RetryHelper(max_retries=5, base_delay=1.0, max_delay=5.0)
    assert [helper.calculate_delay(a) for a in range(5)] == [1.0, 2.0, 4.0, 5.0, 5.0]


@pytest.mark.asyncio
async def test_keyed_lock_serializes_same_key_only():
    locks = KeyedLock()
    order = []

    async def worker(key, name, delay):
        async with locks.hold(key) as contended:
            order.append((name, "start", contended))
            await asyncio.sleep(delay)
            order.append((name, "end", contended))

    await asyncio.gather(worker("a", "first", 0.02), worker("a", "second", 0), worker("b", "other", 0))

    starts = [entry for entry in order if entry[1] == "start"]
    assert ("first", "start", False) in starts
    assert ("second", "start", True) in starts
    assert ("other", "start", False) in starts
    # Second only starts once first has finished
    assert order.index(("first", "end", False)) < order.index(("second", "start", True))
    assert not locks.locked("a")
    assert locks._locks == {}


def test_format_helpers():
    assert format_duration(3725) == "1h 2m 5s"
    assert truncate_string("abcdef", 4) == "a..."
    assert truncate_string(None, 4) is None


@pytest.mark.asyncio
async def test_keyed_lock_counts_woken_waiter_as_contention():
    locks = KeyedLock()
    seen = []

    async def queued():
        async with locks.hold("a") as contended:
            seen.append(("queued", contended))

    async def late():
        async with locks.hold("a") as contended:
            seen.append(("late", contended))

    async with locks.hold("a"):
        waiter = asyncio.create_task(queued())
        await asyncio.sleep(0)
    # The queued task has been woken but has not acquired the lock yet
    assert not locks.locked("a")
    await late()
    await waiter

    assert seen == [("queued", True), ("late", True)]
    assert locks._locks == {}
