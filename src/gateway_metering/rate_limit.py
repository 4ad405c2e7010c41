"""
Per-Minute Rate Limiter
=======================

Enforces each tier's ``requests_per_minute`` per device in a fixed one-minute
window. Counters live in Redis and are checked and incremented atomically by
a Lua script, so concurrent gateway replicas share one budget.

Keys are structured as ``ratelimit:{device_id}:{minute_bucket}`` and expire
with the window.

Redis failures fail open: the request is allowed and the error is recorded
on the result. A throttle must never take the gateway down with it.

Configuration (environment variables, see ``MeteringConfig``):
    METERING_RATE_LIMIT_ENABLED: Enable the limiter (default: false)
    REDIS_HOST / REDIS_PORT: Redis backend (default: localhost:6379)
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Mapping

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from .tiers import DEFAULT_TIER_POLICIES, TierPolicy, UserTier

logger = logging.getLogger(__name__)

WINDOW_SECONDS = 60

# Returns: [current_value, limit, ttl_remaining, is_allowed (1/0)]
CHECK_AND_INCREMENT_LUA = """
local key = KEYS[1]
local limit = tonumber(ARGV[1])
local window_seconds = tonumber(ARGV[2])

local current = tonumber(redis.call('GET', key) or '0')

if current + 1 > limit then
    local ttl = redis.call('TTL', key)
    if ttl < 0 then ttl = window_seconds end
    return {current, limit, ttl, 0}
end

local new_value = redis.call('INCR', key)
if new_value == 1 then
    redis.call('EXPIRE', key, window_seconds)
end

local ttl = redis.call('TTL', key)
if ttl < 0 then ttl = window_seconds end

return {new_value, limit, ttl, 1}
"""


@dataclass
class RateLimitResult:
    """Result of a per-minute check."""

    allowed: bool
    current: int = 0
    limit: int = 0
    reset_at: float = 0.0  # Unix timestamp when the window resets
    error: str | None = None

    @property
    def remaining(self) -> int:
        return max(0, self.limit - self.current)

    @property
    def retry_after(self) -> int:
        """Seconds until the window resets (for Retry-After header)."""
        if self.reset_at <= 0:
            return WINDOW_SECONDS
        return max(1, int(self.reset_at - time.time()))


class RateLimiter:
    """Redis-backed fixed-window limiter keyed by device id."""

    def __init__(
        self,
        redis_host: str = "localhost",
        redis_port: int = 6379,
        policies: Mapping[UserTier, TierPolicy] = DEFAULT_TIER_POLICIES,
        key_prefix: str = "ratelimit",
        redis_client: Any = None,
        time_fn: Callable[[], float] = time.time,
    ):
        self.redis_host = redis_host
        self.redis_port = redis_port
        self.key_prefix = key_prefix
        self._policies = policies
        self._redis: Any = redis_client
        self._script: Any = None
        self._lock = asyncio.Lock()
        self._time = time_fn

    async def _get_script(self) -> Any:
        """Get or create the Redis connection and registered script."""
        if self._script is None:
            async with self._lock:
                if self._redis is None:
                    self._redis = aioredis.Redis(
                        host=self.redis_host,
                        port=self.redis_port,
                        decode_responses=True,
                        socket_connect_timeout=2.0,
                        socket_timeout=2.0,
                    )
                if self._script is None:
                    self._script = self._redis.register_script(CHECK_AND_INCREMENT_LUA)
        return self._script

    def _bucket_key(self, device_id: str) -> str:
        bucket = int(self._time() // WINDOW_SECONDS)
        return f"{self.key_prefix}:{device_id}:{bucket}"

    async def check(self, device_id: str, tier: UserTier) -> RateLimitResult:
        """Atomically count one request for the device in the current minute."""
        limit = self._policies[tier].requests_per_minute
        key = self._bucket_key(device_id)

        try:
            script = await self._get_script()
            result = await script(keys=[key], args=[limit, WINDOW_SECONDS])
        except (RedisError, OSError, asyncio.TimeoutError) as e:
            logger.error(f"Rate limit check failed for {device_id}: {e}")
            return RateLimitResult(allowed=True, limit=limit, error=str(e))

        current = int(result[0])
        ttl = int(result[2])
        allowed = int(result[3]) == 1
        if not allowed:
            logger.warning(
                f"Rate limit exceeded for {device_id} ({tier.value}): {current}/{limit} per minute"
            )
        return RateLimitResult(
            allowed=allowed,
            current=current,
            limit=int(result[1]),
            reset_at=self._time() + ttl,
        )

    async def ping(self) -> bool:
        """Readiness check for the Redis backend."""
        try:
            await self._get_script()
            return bool(await self._redis.ping())
        except (RedisError, OSError, asyncio.TimeoutError) as e:
            logger.warning(f"Rate limiter Redis ping failed: {e}")
            return False

    async def close(self) -> None:
        """Close Redis connection."""
        if self._redis is not None:
            await self._redis.aclose()
            self._redis = None
            self._script = None
