from __future__ import annotations

import hashlib
import time

import redis.asyncio as aioredis
from redis import Redis


class RedisCache:
    """Thin Redis wrapper for the access-token denylist and rate limits."""

    # Atomic refill + consume
    _TOKEN_BUCKET_SCRIPT = """
local key = KEYS[1]
local now = tonumber(ARGV[1])
local refill_rate = tonumber(ARGV[2])
local capacity = tonumber(ARGV[3])
local cost = tonumber(ARGV[4])

local data = redis.call('HMGET', key, 'tokens', 'ts')
local tokens = tonumber(data[1])
local last = tonumber(data[2])

if tokens == nil or last == nil then
  tokens = capacity
  last = now
end

local delta = math.max(0, now - last)
tokens = math.min(capacity, tokens + delta * refill_rate)

if tokens < cost then
  redis.call('HMSET', key, 'tokens', tokens, 'ts', now)
  local reset_after = math.ceil((cost - tokens) / refill_rate)
  redis.call('EXPIRE', key, math.max(reset_after, 1))
  return {0, tokens, reset_after}
end

tokens = tokens - cost
redis.call('HMSET', key, 'tokens', tokens, 'ts', now)
local ttl = math.ceil(capacity / refill_rate)
redis.call('EXPIRE', key, math.max(ttl, 1))
return {1, tokens, 0}
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
        """Assert Redis connectivity before enabling dependent features."""
        # Short-lived sync client so the async one is not bound to a throwaway loop
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    @staticmethod
    def rate_key(scope: str, subject: str) -> str:
        """Hash the subject so emails and IPs never appear in key names."""
        digest = hashlib.sha256(f"{scope}:{subject}".encode()).hexdigest()
        return f"warden:rate:{scope}:{digest}"

    async def check_rate_limit(self, key: str, limit: int, window_seconds: int) -> bool:
        """Take one token from the bucket; ``False`` when the bucket is empty."""
        refill_rate = float(limit) / float(window_seconds)
        allowed, _tokens, _reset_after = await self._token_bucket(
            keys=[key],
            args=[time.time(), refill_rate, limit, 1],
        )
        return bool(int(allowed))

    async def denylist_access_token(self, jti: str, ttl_seconds: int) -> None:
        """Deny an access token until it would have expired anyway."""
        if ttl_seconds > 0:
            await self.client.set(f"warden:access:denylist:{jti}", "1", ex=ttl_seconds)

    async def is_access_token_denylisted(self, jti: str) -> bool:
        return bool(await self.client.exists(f"warden:access:denylist:{jti}"))

    async def close(self) -> None:
        """Close the connection pool. Call when shutting down or resetting runtime."""
        await self.client.close()
        await self.client.connection_pool.disconnect()


__all__ = ["RedisCache"]
