"""
Sliding-window rate limiting keyed by (scope, origin fingerprint).

Each scope ("submit", "vote", "search", ...) has its own window length and
request budget. Every key keeps a rolling log of request timestamps: on each
request entries older than ``now - window`` are dropped, and the request is
recorded and allowed only while the log holds fewer than ``limit`` entries.
Trim, count and record happen as one atomic step in the store so two
concurrent requests cannot both slip under the limit.

Stores are interchangeable:

- ``MemoryRateLimitStore`` keeps the logs in process memory.
- ``RedisRateLimitStore`` keeps them in Redis sorted sets, shared by every
  instance, updated by a single Lua script.

When the store cannot be reached the limiter fails open: the request is
allowed and the degradation is logged.
"""

import asyncio
import logging
import math
import threading
import time
import uuid
from abc import ABC, abstractmethod
from collections import deque
from dataclasses import dataclass
from typing import Callable, Deque, Dict, Optional

import redis.asyncio as redis
from redis.exceptions import RedisError

from consensus_api.config import Settings, get_settings
from consensus_api.errors import RateLimitExceeded


logger = logging.getLogger(__name__)


SUBMIT_SCOPE = "submit"
VOTE_SCOPE = "vote"
SEARCH_SCOPE = "search"
DEFAULT_SCOPE = "default"
CHALLENGE_FALLBACK_SCOPE = "challenge-fallback"


@dataclass
class WindowState:
    """What the store saw for one key after an atomic hit."""
    allowed: bool
    count: int
    oldest: Optional[float]  # epoch seconds of the oldest entry still in the window


@dataclass
class RateLimitResult:
    scope: str
    allowed: bool
    limit: int
    remaining: int
    reset_at: float
    retry_after: int = 0
    degraded: bool = False

    def headers(self, prefix: str = "X-RateLimit") -> Dict[str, str]:
        return {
            f"{prefix}-Limit": str(self.limit),
            f"{prefix}-Remaining": str(self.remaining),
            f"{prefix}-Reset": str(math.ceil(self.reset_at)),
        }


class RateLimitStoreUnavailable(Exception):
    """The backing store could not be reached."""


class RateLimitStore(ABC):
    """Keyed sliding-window log with an explicit TTL per key."""

    name = "abstract"

    @abstractmethod
    async def hit(self, key: str, now: float, window_seconds: float, limit: int) -> WindowState:
        """Atomically trim, count and (if under ``limit``) record a request."""

    async def close(self) -> None:
        pass


class MemoryRateLimitStore(RateLimitStore):
    """Process-local store. Suitable for a single instance or for tests."""

    name = "memory"

    def __init__(self, cleanup_interval_seconds: float = 60.0):
        self._logs: Dict[str, Deque[float]] = {}
        self._expires_at: Dict[str, float] = {}
        self._lock = threading.Lock()
        self._cleanup_interval = cleanup_interval_seconds
        self._last_cleanup = 0.0

    async def hit(self, key: str, now: float, window_seconds: float, limit: int) -> WindowState:
        return self.hit_sync(key, now, window_seconds, limit)

    def hit_sync(self, key: str, now: float, window_seconds: float, limit: int) -> WindowState:
        with self._lock:
            if now - self._last_cleanup >= self._cleanup_interval:
                self._purge_locked(now)
                self._last_cleanup = now

            log = self._logs.setdefault(key, deque())
            cutoff = now - window_seconds
            while log and log[0] <= cutoff:
                log.popleft()

            allowed = len(log) < limit
            if allowed:
                log.append(now)

            self._expires_at[key] = (log[-1] if log else now) + window_seconds
            return WindowState(allowed=allowed, count=len(log), oldest=log[0] if log else None)

    def purge_expired(self, now: Optional[float] = None) -> int:
        """Drop keys whose whole log has aged out. Returns the number dropped."""
        with self._lock:
            return self._purge_locked(now if now is not None else time.time())

    def _purge_locked(self, now: float) -> int:
        expired = [key for key, expires_at in self._expires_at.items() if expires_at <= now]
        for key in expired:
            self._expires_at.pop(key, None)
            self._logs.pop(key, None)
        return len(expired)

    def __len__(self) -> int:
        return len(self._logs)


# KEYS[1] = log key; ARGV = now_ms, window_ms, limit, member
SLIDING_WINDOW_LUA = """
local key = KEYS[1]
local now = tonumber(ARGV[1])
local window = tonumber(ARGV[2])
local limit = tonumber(ARGV[3])
local member = ARGV[4]

redis.call('ZREMRANGEBYSCORE', key, '-inf', now - window)
local count = redis.call('ZCARD', key)
local allowed = 0
if count < limit then
  redis.call('ZADD', key, now, member)
  count = count + 1
  allowed = 1
end
redis.call('PEXPIRE', key, window)

local oldest = redis.call('ZRANGE', key, 0, 0, 'WITHSCORES')
local oldest_score = ''
if oldest[2] then
  oldest_score = oldest[2]
end
return {allowed, count, oldest_score}
"""


class RedisRateLimitStore(RateLimitStore):
    """Shared store: one sorted set per key, scored by request time in ms."""

    name = "redis"

    def __init__(
        self,
        redis_url: Optional[str] = None,
        client=None,
        key_prefix: str = "ratelimit",
        socket_timeout: float = 1.0,
    ):
        self.redis_url = redis_url
        self.redis = client
        self.key_prefix = key_prefix
        self.socket_timeout = socket_timeout
        self._script = None
        self._connect_lock = asyncio.Lock()

    async def connect(self):
        """Initialize Redis connection"""
        async with self._connect_lock:
            if self.redis is None:
                self.redis = await redis.from_url(
                    self.redis_url,
                    decode_responses=True,
                    socket_timeout=self.socket_timeout,
                    socket_connect_timeout=self.socket_timeout,
                )
            if self._script is None:
                self._script = self.redis.register_script(SLIDING_WINDOW_LUA)

    async def close(self):
        """Close Redis connection"""
        if self.redis is not None:
            await self.redis.aclose()
            self.redis = None
            self._script = None

    async def hit(self, key: str, now: float, window_seconds: float, limit: int) -> WindowState:
        now_ms = int(now * 1000)
        window_ms = int(window_seconds * 1000)
        member = f"{now_ms}:{uuid.uuid4().hex}"
        try:
            if self.redis is None or self._script is None:
                await self.connect()
            allowed, count, oldest = await self._script(
                keys=[f"{self.key_prefix}:{key}"],
                args=[now_ms, window_ms, limit, member],
            )
        except (RedisError, OSError) as e:
            raise RateLimitStoreUnavailable(str(e)) from e

        return WindowState(
            allowed=bool(int(allowed)),
            count=int(count),
            oldest=float(oldest) / 1000 if oldest else None,
        )


class SlidingWindowRateLimiter:
    """Rate limiter for one scope."""

    def __init__(
        self,
        store: RateLimitStore,
        scope: str,
        limit: int,
        window_seconds: float,
        message: Optional[str] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.store = store
        self.scope = scope
        self.limit = limit
        self.window_seconds = window_seconds
        self.message = message
        self.clock = clock

    def _key(self, origin_fingerprint: str) -> str:
        return f"{self.scope}:{origin_fingerprint}"

    async def check(self, origin_fingerprint: str) -> RateLimitResult:
        """Record one request for the origin and report whether it is allowed."""
        now = self.clock()
        try:
            state = await self.store.hit(
                self._key(origin_fingerprint), now, self.window_seconds, self.limit
            )
        except RateLimitStoreUnavailable as e:
            logger.warning(
                f"Rate limit store '{self.store.name}' unavailable for scope "
                f"'{self.scope}', failing open: {e}"
            )
            return RateLimitResult(
                scope=self.scope,
                allowed=True,
                limit=self.limit,
                remaining=self.limit,
                reset_at=now + self.window_seconds,
                degraded=True,
            )

        reset_at = (state.oldest if state.oldest is not None else now) + self.window_seconds
        retry_after = 0 if state.allowed else max(1, math.ceil(reset_at - now))
        return RateLimitResult(
            scope=self.scope,
            allowed=state.allowed,
            limit=self.limit,
            remaining=max(0, self.limit - state.count),
            reset_at=reset_at,
            retry_after=retry_after,
        )

    async def enforce(self, origin_fingerprint: str) -> RateLimitResult:
        """Like ``check`` but raises ``RateLimitExceeded`` when over the limit."""
        result = await self.check(origin_fingerprint)
        if not result.allowed:
            logger.warning(
                f"Rate limit exceeded for scope '{self.scope}' "
                f"(limit={self.limit}/{self.window_seconds}s, retry_after={result.retry_after}s)"
            )
            raise RateLimitExceeded(
                self.message,
                retry_after=result.retry_after,
                headers=result.headers(),
            )
        return result


class RateLimiterRegistry:
    """One limiter per scope, all sharing the same backing store."""

    def __init__(
        self,
        store: RateLimitStore,
        settings: Optional[Settings] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.store = store
        settings = settings or get_settings()
        self._limiters = {
            SUBMIT_SCOPE: SlidingWindowRateLimiter(
                store, SUBMIT_SCOPE,
                settings.submit_rate_limit, settings.submit_rate_window_seconds,
                message="You've submitted too many verifications. Please try again later.",
                clock=clock,
            ),
            VOTE_SCOPE: SlidingWindowRateLimiter(
                store, VOTE_SCOPE,
                settings.vote_rate_limit, settings.vote_rate_window_seconds,
                message="You've submitted too many votes. Please try again later.",
                clock=clock,
            ),
            SEARCH_SCOPE: SlidingWindowRateLimiter(
                store, SEARCH_SCOPE,
                settings.search_rate_limit, settings.search_rate_window_seconds,
                message="Too many search requests. Please try again later.",
                clock=clock,
            ),
            DEFAULT_SCOPE: SlidingWindowRateLimiter(
                store, DEFAULT_SCOPE,
                settings.default_rate_limit, settings.default_rate_window_seconds,
                clock=clock,
            ),
            CHALLENGE_FALLBACK_SCOPE: SlidingWindowRateLimiter(
                store, CHALLENGE_FALLBACK_SCOPE,
                settings.challenge_fallback_rate_limit,
                settings.challenge_fallback_window_seconds,
                clock=clock,
            ),
        }

    def get(self, scope: str) -> SlidingWindowRateLimiter:
        return self._limiters[scope]

    async def close(self) -> None:
        await self.store.close()


def build_rate_limit_store(settings: Optional[Settings] = None) -> RateLimitStore:
    """Shared Redis store when configured, process memory otherwise."""
    settings = settings or get_settings()
    if settings.redis_url:
        logger.info("Rate limiting backed by Redis")
        return RedisRateLimitStore(settings.redis_url)
    logger.info("Rate limiting backed by process memory (REDIS_URL not configured)")
    return MemoryRateLimitStore()
