from __future__ import annotations

import asyncio
import hashlib
import math
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, Optional, Protocol, Tuple

from vidtube.logging import get_logger
from vidtube.service.errors import ThrottledError

logger = get_logger(__name__)

# INCR, start the window on the first hit, report the remaining window.
_FIXED_WINDOW_LUA = """
local count = redis.call('INCR', KEYS[1])
if count == 1 then
  redis.call('PEXPIRE', KEYS[1], ARGV[1])
end
local ttl = redis.call('PTTL', KEYS[1])
if ttl < 0 then
  redis.call('PEXPIRE', KEYS[1], ARGV[1])
  ttl = tonumber(ARGV[1])
end
return {count, ttl}
"""


@dataclass
class RateLimitDecision:
    """Outcome of an admitted request."""

    limit: int
    remaining: int
    reset_after: int


class RateLimiter(Protocol):
    name: str
    max_requests: int
    window_seconds: int

    async def admit(self, key: str) -> RateLimitDecision: ...

    def sweep(self) -> int: ...


def _check_policy(window_seconds: int, max_requests: int) -> None:
    if window_seconds <= 0:
        raise ValueError("window_seconds must be positive")
    if max_requests <= 0:
        raise ValueError("max_requests must be positive")


class FixedWindowRateLimiter:
    """Process-local fixed-window counter per client key.

    The first request for a key opens a window of ``window_seconds``; requests
    past ``max_requests`` inside it raise ``ThrottledError``. Once the clock
    passes the window end the next request starts a fresh count of one.
    Bursts straddling a window boundary are accepted.
    """

    def __init__(
        self,
        name: str,
        *,
        window_seconds: int,
        max_requests: int,
        clock: Optional[Callable[[], float]] = None,
    ) -> None:
        _check_policy(window_seconds, max_requests)
        self.name = name
        self.window_seconds = window_seconds
        self.max_requests = max_requests
        self.clock = clock or time.monotonic
        # key -> (count, reset_at)
        self._counters: Dict[str, Tuple[int, float]] = {}
        self._lock = threading.Lock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._counters)

    def hit(self, key: str) -> RateLimitDecision:
        now = self.clock()
        with self._lock:
            entry = self._counters.get(key)
            if entry is None or now > entry[1]:
                count, reset_at = 1, now + self.window_seconds
            else:
                count, reset_at = entry[0] + 1, entry[1]
            self._counters[key] = (count, reset_at)

        reset_after = max(1, math.ceil(reset_at - now))
        if count > self.max_requests:
            logger.warning(
                "rate_limit_exceeded",
                limiter=self.name,
                count=count,
                limit=self.max_requests,
                retry_after=reset_after,
            )
            raise ThrottledError(reset_after)
        return RateLimitDecision(
            limit=self.max_requests,
            remaining=self.max_requests - count,
            reset_after=reset_after,
        )

    async def admit(self, key: str) -> RateLimitDecision:
        return self.hit(key)

    def sweep(self) -> int:
        """Drop counters whose window has elapsed; live counters are untouched."""
        now = self.clock()
        with self._lock:
            expired = [key for key, (_, reset_at) in self._counters.items() if now > reset_at]
            for key in expired:
                del self._counters[key]
        if expired:
            logger.debug("rate_limit_sweep", limiter=self.name, removed=len(expired))
        return len(expired)

    def snapshot(self, key: str) -> Optional[Tuple[int, float]]:
        with self._lock:
            return self._counters.get(key)

    def reset(self) -> None:
        with self._lock:
            self._counters.clear()


class RedisFixedWindowRateLimiter:
    """Fixed-window limiter whose counters live in Redis.

    Lets several replicas share one budget per client. Keys expire on their
    own, so ``sweep`` has nothing to do.
    """

    def __init__(
        self,
        client: Any,
        name: str,
        *,
        window_seconds: int,
        max_requests: int,
        prefix: str = "vidtube:rate",
    ) -> None:
        _check_policy(window_seconds, max_requests)
        self.client = client
        self.name = name
        self.window_seconds = window_seconds
        self.max_requests = max_requests
        self.prefix = prefix
        self._fixed_window = client.register_script(_FIXED_WINDOW_LUA)

    def _redis_key(self, key: str) -> str:
        # hash the client key so it cannot inject delimiters
        digest = hashlib.sha256(key.encode()).hexdigest()
        return f"{self.prefix}:{self.name}:{digest}"

    async def admit(self, key: str) -> RateLimitDecision:
        window_ms = self.window_seconds * 1000
        count, ttl_ms = await self._fixed_window(
            keys=[self._redis_key(key)], args=[window_ms]
        )
        count = int(count)
        reset_after = max(1, math.ceil(int(ttl_ms) / 1000))
        if count > self.max_requests:
            logger.warning(
                "rate_limit_exceeded",
                limiter=self.name,
                count=count,
                limit=self.max_requests,
                retry_after=reset_after,
                backend="redis",
            )
            raise ThrottledError(reset_after)
        return RateLimitDecision(
            limit=self.max_requests,
            remaining=self.max_requests - count,
            reset_after=reset_after,
        )

    def sweep(self) -> int:
        return 0


async def run_sweeper(limiters: Iterable[RateLimiter], interval_seconds: int) -> None:
    """Background loop that periodically sweeps expired rate-limit counters."""

    pool = list(limiters)
    interval = max(interval_seconds, 1)
    try:
        while True:
            await asyncio.sleep(interval)
            for limiter in pool:
                try:
                    limiter.sweep()
                except Exception as exc:  # pragma: no cover - best-effort cleanup
                    logger.warning(
                        "rate_limit_sweep_failed", limiter=limiter.name, error=str(exc)
                    )
    except asyncio.CancelledError:
        logger.info("rate_limit_sweeper_cancelled")
