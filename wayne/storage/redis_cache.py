from __future__ import annotations

import hashlib
import time
from typing import Tuple

import redis.asyncio as aioredis
from redis import Redis


class RedisCache:
    """Redis-backed token buckets for the unauthenticated auth endpoints."""

    # Refill and consume in one round trip so concurrent workers cannot overdraw.
    _TOKEN_BUCKET_SCRIPT = """
local key = KEYS[1]
local now = tonumber(ARGV[1])
local refill_rate = tonumber(ARGV[2])
local capacity = tonumber(ARGV[3])

local state = redis.call('HMGET', key, 'tokens', 'ts')
local tokens = tonumber(state[1])
local last = tonumber(state[2])
if tokens == nil or last == nil then
  tokens = capacity
  last = now
end

tokens = math.min(capacity, tokens + math.max(0, now - last) * refill_rate)

if tokens < 1 then
  local retry_after = math.ceil((1 - tokens) / refill_rate)
  redis.call('HSET', key, 'tokens', tokens, 'ts', now)
  redis.call('EXPIRE', key, math.max(retry_after, 1))
  return {0, retry_after}
end

redis.call('HSET', key, 'tokens', tokens - 1, 'ts', now)
redis.call('EXPIRE', key, math.max(math.ceil(capacity / refill_rate), 1))
return {1, 0}
"""

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._token_bucket = self.client.register_script(self._TOKEN_BUCKET_SCRIPT)

    def verify_connection(self) -> None:
        """Ping with a short-lived sync client so the async pool stays loop-agnostic."""
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    @staticmethod
    def _bucket_key(key: str) -> str:
        # hashed so emails and addresses never appear in Redis keys
        return "wayne:rate:" + hashlib.sha256(key.encode()).hexdigest()

    async def check_rate_limit(
        self, key: str, limit: int, window_seconds: int
    ) -> Tuple[bool, int]:
        """Consume one token; returns ``(allowed, retry_after_seconds)``."""
        refill_rate = float(limit) / float(window_seconds)
        allowed, retry_after = await self._token_bucket(
            keys=[self._bucket_key(key)],
            args=[time.time(), refill_rate, limit],
        )
        return bool(int(allowed)), int(retry_after or 0)

    async def close(self) -> None:
        await self.client.aclose()


__all__ = ["RedisCache"]
