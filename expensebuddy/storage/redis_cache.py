from __future__ import annotations

import hashlib
import inspect
import json
import time
from datetime import datetime, timezone
from typing import Any, Tuple, Union

import redis.asyncio as aioredis
from redis import Redis

_BLACKLIST_PREFIX = "auth:blacklist:"

# KEYS[1] bucket; ARGV: now, capacity, per-second refill, cost.
# Returns {allowed, whole tokens left, seconds until the cost fits}.
_BUCKET_SCRIPT = """
local state = redis.call('HMGET', KEYS[1], 'level', 'at')
local now = tonumber(ARGV[1])
local capacity = tonumber(ARGV[2])
local refill = tonumber(ARGV[3])
local cost = tonumber(ARGV[4])
local level = tonumber(state[1]) or capacity
local at = tonumber(state[2]) or now
level = math.min(capacity, level + math.max(0, now - at) * refill)
local allowed = 0
local wait = 0
if level >= cost then
  level = level - cost
  allowed = 1
else
  wait = math.ceil((cost - level) / refill)
end
redis.call('HSET', KEYS[1], 'level', level, 'at', now)
redis.call('EXPIRE', KEYS[1], math.max(1, math.ceil(capacity / refill)))
return {allowed, math.floor(level), wait}
"""

RateLimitResult = Union[bool, Tuple[bool, int, int]]


def _rate_key(key: str) -> str:
    """Bucket key; subjects are emails and addresses, so only a digest is stored."""
    return f"rate:{hashlib.sha256(key.encode()).hexdigest()}"


async def _resolve(value: Any) -> Any:
    return await value if inspect.isawaitable(value) else value


class _CacheCommands:
    """Blacklist and rate-limit commands shared by the async and sync clients."""

    client: Any

    def _setup(self, redis_url: str) -> None:
        self.redis_url = redis_url
        self._bucket = self.client.register_script(_BUCKET_SCRIPT)

    async def blacklist_token(self, jti: str, ttl_seconds: int, reason: str) -> None:
        """Remember a revoked ``jti`` for the rest of the token's life."""
        if ttl_seconds <= 0:
            return
        record = json.dumps(
            {"reason": reason, "blacklisted_at": datetime.now(timezone.utc).isoformat()}
        )
        await _resolve(self.client.set(f"{_BLACKLIST_PREFIX}{jti}", record, ex=ttl_seconds))

    async def is_token_blacklisted(self, jti: str) -> bool:
        return bool(await _resolve(self.client.exists(f"{_BLACKLIST_PREFIX}{jti}")))

    async def check_rate_limit(
        self,
        key: str,
        limit: int,
        window_seconds: int,
        *,
        return_remaining: bool = False,
        cost: int = 1,
    ) -> RateLimitResult:
        allowed, left, wait = await _resolve(
            self._bucket(
                keys=[_rate_key(key)],
                args=[time.time(), limit, limit / window_seconds, max(1, cost)],
            )
        )
        if return_remaining:
            return bool(int(allowed)), max(0, int(left)), int(wait)
        return bool(int(allowed))


class RedisCache(_CacheCommands):
    """asyncio client used by the running service."""

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._setup(redis_url)

    def verify_connection(self) -> None:
        # Pinged from a throwaway sync client so the async pool stays loop-free
        probe = Redis.from_url(self.redis_url, socket_connect_timeout=2)
        try:
            probe.ping()
        finally:
            probe.close()

    async def close(self) -> None:
        await self.client.aclose()


class SyncRedisCache(_CacheCommands):
    """Blocking client behind the same awaitable surface, for tests and scripts."""

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.client = Redis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._setup(redis_url)

    def verify_connection(self) -> None:
        self.client.ping()

    async def close(self) -> None:
        self.client.close()
