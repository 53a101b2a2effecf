from functools import lru_cache

import redis

from ..core.config import settings


@lru_cache(maxsize=1)
def get_redis() -> redis.Redis:
    return redis.Redis.from_url(
        settings.redis_url,
        decode_responses=True,
        socket_timeout=0.5,
        socket_connect_timeout=0.5,
    )


# Lua script implementing a token bucket stored as a hash {tokens, ts}
# KEYS[1] = storage key
# ARGV[1] = capacity
# ARGV[2] = refill rate (tokens per second)
# ARGV[3] = cost
# ARGV[4] = now_ms
# ARGV[5] = ttl_ms for idle buckets
# Returns: {allowed, tokens_after (string), retry_after_ms}
TOKEN_BUCKET_LUA = r"""
local key = KEYS[1]
local capacity = tonumber(ARGV[1])
local refill = tonumber(ARGV[2])
local cost = tonumber(ARGV[3])
local now_ms = tonumber(ARGV[4])
local ttl_ms = tonumber(ARGV[5])

local state = redis.call('HMGET', key, 'tokens', 'ts')
local tokens = tonumber(state[1])
local ts = tonumber(state[2])
if tokens == nil or ts == nil then
  tokens = capacity
  ts = now_ms
end

local elapsed_ms = math.max(0, now_ms - ts)
tokens = math.min(capacity, tokens + (elapsed_ms / 1000.0) * refill)

if tokens >= cost then
  tokens = tokens - cost
  redis.call('HSET', key, 'tokens', tostring(tokens), 'ts', now_ms)
  redis.call('PEXPIRE', key, ttl_ms)
  return {1, tostring(tokens), 0}
end

-- denied: leave the stored bucket untouched
local retry_after_ms = -1
if refill > 0 then
  retry_after_ms = math.ceil(((cost - tokens) / refill) * 1000)
end
return {0, tostring(tokens), retry_after_ms}
"""

__all__ = ["get_redis", "TOKEN_BUCKET_LUA"]
