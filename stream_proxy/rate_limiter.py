"""
Fixed-window rate limiter
Counters live in an injected store: in-process memory or Redis
"""
import math
import threading
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Dict, Optional, Tuple

import redis.asyncio as redis

from stream_proxy.errors import RateLimited


@dataclass(frozen=True)
class WindowState:
    """Counter for one identity inside its current window"""
    count: int
    window_start: float


@dataclass(frozen=True)
class RateLimitDecision:
    """Outcome of a single rate limiter call"""
    allowed: bool
    limit: int
    count: int
    window_seconds: int
    reset_at: float

    @property
    def remaining(self) -> int:
        return max(0, self.limit - self.count)

    def retry_after(self, now: Optional[float] = None) -> int:
        now = time.time() if now is None else now
        return max(0, math.ceil(self.reset_at - now))

    def headers(self, now: Optional[float] = None) -> Dict[str, str]:
        """Standard RateLimit-* response headers"""
        reset = str(self.retry_after(now))
        headers = {
            "RateLimit-Limit": str(self.limit),
            "RateLimit-Remaining": str(self.remaining),
            "RateLimit-Reset": reset,
        }
        if not self.allowed:
            headers["Retry-After"] = reset
        return headers


class CounterStore(ABC):
    """Atomic increment-and-read keyed by client identity"""

    @abstractmethod
    async def hit(self, key: str, window_seconds: int, now: float) -> WindowState:
        """Count one request for key, opening a new window if none is live"""

    async def close(self) -> None:
        pass


class InMemoryCounterStore(CounterStore):
    """Single-process store"""

    SWEEP_THRESHOLD = 10000
    SWEEP_INTERVAL = 60.0

    def __init__(self):
        self._windows: Dict[str, Tuple[int, float]] = {}
        self._lock = threading.Lock()
        self._last_sweep: Optional[float] = None

    async def hit(self, key: str, window_seconds: int, now: float) -> WindowState:
        with self._lock:
            entry = self._windows.get(key)
            if entry is None or now - entry[1] >= window_seconds:
                if len(self._windows) >= self.SWEEP_THRESHOLD and self._sweep_due(now):
                    self._sweep(window_seconds, now)
                entry = (1, now)
            else:
                entry = (entry[0] + 1, entry[1])
            self._windows[key] = entry
        return WindowState(count=entry[0], window_start=entry[1])

    def _sweep_due(self, now: float) -> bool:
        # A full table of live windows would otherwise be rescanned for every new key
        return self._last_sweep is None or now - self._last_sweep >= self.SWEEP_INTERVAL

    def _sweep(self, window_seconds: int, now: float) -> None:
        """Drop expired windows; caller holds the lock"""
        self._last_sweep = now
        expired = [k for k, (_, start) in self._windows.items() if now - start >= window_seconds]
        for k in expired:
            del self._windows[k]


class RedisCounterStore(CounterStore):
    """Store shared by every proxy node pointed at the same Redis"""

    def __init__(self, redis_client: redis.Redis, prefix: str = "rate_limit:window"):
        self.redis = redis_client
        self.prefix = prefix

    def _get_redis_key(self, key: str) -> str:
        return f"{self.prefix}:{key}"

    async def hit(self, key: str, window_seconds: int, now: float) -> WindowState:
        redis_key = self._get_redis_key(key)

        # MULTI/EXEC: the window is created at most once and every increment lands
        pipe = self.redis.pipeline(transaction=True)
        pipe.set(redis_key, 0, ex=window_seconds, nx=True)
        pipe.incr(redis_key)
        pipe.ttl(redis_key)
        _, count, ttl = await pipe.execute()

        if ttl is None or ttl < 0:
            # Key lost its expiry (e.g. restored without TTL); re-arm it
            await self.redis.expire(redis_key, window_seconds)
            ttl = window_seconds

        window_start = now - (window_seconds - int(ttl))
        return WindowState(count=int(count), window_start=window_start)

    async def close(self) -> None:
        await self.redis.aclose()


class RateLimiter:
    """Fixed-window request counter per client identity"""

    def __init__(self, store: CounterStore, window_seconds: int, max_requests: int):
        self.store = store
        self.window_seconds = window_seconds
        self.max_requests = max_requests

    async def hit(self, identity: str, now: Optional[float] = None) -> RateLimitDecision:
        """
        Count one request for identity
        Returns the allow/deny decision
        """
        now = time.time() if now is None else now
        state = await self.store.hit(identity, self.window_seconds, now)
        return RateLimitDecision(
            allowed=state.count <= self.max_requests,
            limit=self.max_requests,
            count=state.count,
            window_seconds=self.window_seconds,
            reset_at=state.window_start + self.window_seconds,
        )

    async def enforce(self, identity: str, now: Optional[float] = None) -> RateLimitDecision:
        """Like hit() but raises RateLimited on deny"""
        decision = await self.hit(identity, now)
        if not decision.allowed:
            raise RateLimited(decision)
        return decision
