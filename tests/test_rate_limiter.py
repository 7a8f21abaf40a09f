import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from vidtube.service.errors import ThrottledError
from vidtube.service.rate_limit import (
    FixedWindowRateLimiter,
    RedisFixedWindowRateLimiter,
    run_sweeper,
)


class ManualClock:
    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


def _limiter(clock, window=60, max_requests=3):
    return FixedWindowRateLimiter(
        "test", window_seconds=window, max_requests=max_requests, clock=clock
    )


def test_allows_up_to_max_then_throttles():
    clock = ManualClock()
    limiter = _limiter(clock)

    decisions = [limiter.hit("1.2.3.4") for _ in range(3)]
    assert [d.remaining for d in decisions] == [2, 1, 0]
    assert all(d.limit == 3 for d in decisions)

    clock.now += 20
    with pytest.raises(ThrottledError) as exc_info:
        limiter.hit("1.2.3.4")
    assert exc_info.value.retry_after == 40
    assert exc_info.value.status_code == 429
    assert exc_info.value.detail["retry_after"] == 40


def test_retry_after_is_at_least_one_second():
    clock = ManualClock()
    limiter = _limiter(clock, window=10, max_requests=1)
    limiter.hit("k")
    clock.now += 9.9
    with pytest.raises(ThrottledError) as exc_info:
        limiter.hit("k")
    assert exc_info.value.retry_after == 1


def test_window_resets_after_expiry():
    clock = ManualClock()
    limiter = _limiter(clock, window=60, max_requests=2)
    limiter.hit("k")
    limiter.hit("k")

    # still inside the window at exactly reset_at
    clock.now += 60
    with pytest.raises(ThrottledError):
        limiter.hit("k")

    clock.now += 0.5
    decision = limiter.hit("k")
    assert decision.remaining == 1
    assert limiter.snapshot("k") == (1, clock.now + 60)


def test_keys_are_independent():
    clock = ManualClock()
    limiter = _limiter(clock, max_requests=1)
    limiter.hit("a")
    limiter.hit("b")
    with pytest.raises(ThrottledError):
        limiter.hit("a")


def test_throttled_hits_still_count():
    clock = ManualClock()
    limiter = _limiter(clock, max_requests=1)
    limiter.hit("k")
    for _ in range(3):
        with pytest.raises(ThrottledError):
            limiter.hit("k")
    assert limiter.snapshot("k")[0] == 4


def test_sweep_removes_only_expired_counters():
    clock = ManualClock()
    limiter = _limiter(clock, window=60)
    limiter.hit("old")
    clock.now += 30
    limiter.hit("fresh")

    clock.now += 31
    assert limiter.sweep() == 1
    assert limiter.snapshot("old") is None
    assert limiter.snapshot("fresh") is not None
    assert len(limiter) == 1


def test_invalid_policy_rejected():
    with pytest.raises(ValueError):
        FixedWindowRateLimiter("bad", window_seconds=0, max_requests=1)
    with pytest.raises(ValueError):
        FixedWindowRateLimiter("bad", window_seconds=10, max_requests=0)


@pytest.mark.asyncio
async def test_admit_is_async_hit():
    limiter = _limiter(ManualClock(), max_requests=1)
    decision = await limiter.admit("k")
    assert decision.remaining == 0
    with pytest.raises(ThrottledError):
        await limiter.admit("k")


@pytest.mark.asyncio
async def test_sweeper_sweeps_until_cancelled():
    class CountingLimiter:
        name = "counting"

        def __init__(self):
            self.sweeps = 0

        def sweep(self):
            self.sweeps += 1
            return 0

    limiter = CountingLimiter()
    task = asyncio.create_task(run_sweeper([limiter], 0))
    await asyncio.sleep(2.2)
    task.cancel()
    await task
    assert limiter.sweeps >= 2


def _redis_limiter(results, max_requests=2):
    script = AsyncMock(side_effect=results)
    client = MagicMock()
    client.register_script.return_value = script
    limiter = RedisFixedWindowRateLimiter(
        client, "auth", window_seconds=60, max_requests=max_requests
    )
    return limiter, script


@pytest.mark.asyncio
async def test_redis_limiter_admits_and_throttles():
    limiter, script = _redis_limiter([[1, 60000], [2, 59000], [3, 1500]])

    first = await limiter.admit("1.2.3.4")
    assert (first.remaining, first.reset_after) == (1, 60)
    second = await limiter.admit("1.2.3.4")
    assert second.remaining == 0

    with pytest.raises(ThrottledError) as exc_info:
        await limiter.admit("1.2.3.4")
    assert exc_info.value.retry_after == 2

    kwargs = script.await_args.kwargs
    assert kwargs["args"] == [60000]
    key = kwargs["keys"][0]
    assert key.startswith("vidtube:rate:auth:")
    assert "1.2.3.4" not in key
    assert limiter.sweep() == 0
