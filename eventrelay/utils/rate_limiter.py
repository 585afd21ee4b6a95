"""
Redis-based sliding window rate limiter for outbound deliveries.

Three gates are evaluated in order - rule, tenant, global - inside a single
Lua script so the check-and-record is atomic across worker replicas. A
request is recorded in every window only when all gates allow it.
"""
import logging
import math
import time
import uuid
from dataclasses import dataclass
from typing import Optional

logger = logging.getLogger(__name__)

# KEYS: one sorted set per gate. ARGV: now_ms, member, then (limit, window_ms) per key.
# Returns {0, 0} when allowed, else {index of denying key, ms until a slot frees}.
SLIDING_WINDOW_SCRIPT = """
local now = tonumber(ARGV[1])
local member = ARGV[2]
for i, key in ipairs(KEYS) do
  local limit = tonumber(ARGV[1 + i * 2])
  local window = tonumber(ARGV[2 + i * 2])
  redis.call('ZREMRANGEBYSCORE', key, 0, now - window)
  local count = redis.call('ZCARD', key)
  if count >= limit then
    local oldest = redis.call('ZRANGE', key, 0, 0, 'WITHSCORES')
    local wait = window
    if oldest[2] then
      wait = tonumber(oldest[2]) + window - now
    end
    return {i, wait}
  end
end
for i, key in ipairs(KEYS) do
  local window = tonumber(ARGV[2 + i * 2])
  redis.call('ZADD', key, now, member)
  redis.call('PEXPIRE', key, window + 1000)
end
return {0, 0}
"""


@dataclass
class RateLimitScope:
    """One gate: scope name ("rule", "tenant", "global"), its id and its limit."""
    name: str
    scope_id: str
    max_requests: int
    window_ms: int

    @property
    def redis_key(self) -> str:
        # Window length is part of the key so a config change starts a fresh window
        return f"eventrelay:ratelimit:{self.name}:{self.scope_id}:{self.window_ms}"


@dataclass
class RateLimitDecision:
    allowed: bool
    scope: Optional[str] = None
    retry_after: Optional[int] = None


async def check_rate_limits(scopes: list[RateLimitScope]) -> RateLimitDecision:
    """
    Check and record one request against every gate.

    Returns: RateLimitDecision(allowed, denying scope name, retry_after_seconds)
    """
    active = [s for s in scopes if s.max_requests > 0 and s.window_ms > 0]
    if not active:
        return RateLimitDecision(allowed=True)

    try:
        from eventrelay.utils.dedup import get_redis
        redis = await get_redis()

        now_ms = int(time.time() * 1000)
        member = f"{now_ms}:{uuid.uuid4().hex[:12]}"
        args: list = [now_ms, member]
        for scope in active:
            args.extend([scope.max_requests, scope.window_ms])

        result = await redis.eval(
            SLIDING_WINDOW_SCRIPT,
            len(active),
            *[s.redis_key for s in active],
            *args,
        )
        denied_index = int(result[0])
        if denied_index == 0:
            return RateLimitDecision(allowed=True)

        scope = active[denied_index - 1]
        retry_after = max(math.ceil(int(result[1]) / 1000), 1)
        logger.warning(
            "Rate limit exceeded: scope=%s id=%s limit=%d/%dms",
            scope.name, scope.scope_id, scope.max_requests, scope.window_ms,
        )
        return RateLimitDecision(allowed=False, scope=scope.name, retry_after=retry_after)
    except Exception as e:
        # Redis failure should not stop deliveries - allow through
        logger.warning("Rate limiter Redis error: %s. Allowing request.", str(e))
        return RateLimitDecision(allowed=True)
