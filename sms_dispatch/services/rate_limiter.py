"""
Admission Controller - Redis-based sliding window rate limiting.

Every send request is evaluated against its caller identifier before it is
allowed to become a job. Exceeding the window capacity puts the identifier
into a hard block for a fixed duration, during which every request is
rejected regardless of the window contents.

Design:
- Sliding window algorithm over exact request timestamps
- Redis sorted sets for the window, a plain key holding ``blocked_until``
- Atomic Lua script for check-and-record (no read-then-write races)
- Fail-open behavior (if Redis is down, requests are admitted)

Usage:
    limiter = SlidingWindowRateLimiter(redis_client, window_ms=60_000,
                                       max_requests=30, block_duration_ms=300_000)

    decision = await limiter.evaluate("tenant-42")
    if not decision.allowed:
        raise AdmissionRejectedError("Rate limit exceeded", decision)
"""

import uuid

from sms_dispatch.infrastructure.observability.logging import get_logger
from sms_dispatch.models.domain.sms_domain import RateLimitDecision
from sms_dispatch.services.redis_client import RedisClient
from sms_dispatch.utils.time_utils import Clock, now_ms

logger = get_logger(__name__)


class SlidingWindowRateLimiter:
    """
    Sliding window rate limiter with temporary blocking, keyed by identifier.

    Example:
        With 30 requests per 60s and a 300s block, the 31st request inside a
        minute is rejected and blocks the identifier for five minutes. Once
        the block ends and old events slide out of the window, requests are
        admitted again.

    Thread Safety:
        ``evaluate`` runs as a single Lua script, so concurrent API callers
        and workers never race on the same window.
    """

    # Returns: {allowed (0/1), remaining, reset_time, blocked (0/1), block_remaining}
    EVALUATE_LUA_SCRIPT = """
    local key = KEYS[1]
    local block_key = KEYS[2]
    local now = tonumber(ARGV[1])
    local window_ms = tonumber(ARGV[2])
    local limit = tonumber(ARGV[3])
    local block_ms = tonumber(ARGV[4])
    local member = ARGV[5]
    local blocked_until_arg = ARGV[6]

    -- An active block rejects without touching the window
    local blocked_until = tonumber(redis.call('GET', block_key) or '0')
    if blocked_until > now then
        return {0, 0, blocked_until, 1, blocked_until - now}
    end

    -- Remove entries that slid out of the window
    redis.call('ZREMRANGEBYSCORE', key, '-inf', now - window_ms)

    local current_count = redis.call('ZCARD', key)

    if current_count >= limit then
        local reset_time = now + window_ms
        local oldest = redis.call('ZRANGE', key, 0, 0, 'WITHSCORES')
        if #oldest > 0 then
            reset_time = tonumber(oldest[2]) + window_ms
        end
        redis.call('SET', block_key, blocked_until_arg, 'PX', block_ms)
        return {0, 0, reset_time, 1, block_ms}
    end

    redis.call('ZADD', key, ARGV[1], member)
    redis.call('PEXPIRE', key, window_ms)

    return {1, limit - (current_count + 1), now + window_ms, 0, 0}
    """

    def __init__(
        self,
        redis_client: RedisClient,
        window_ms: int = 60_000,
        max_requests: int = 30,
        block_duration_ms: int = 300_000,
        key_prefix: str = "sms-queue",
        clock: Clock = now_ms,
    ):
        if window_ms <= 0 or max_requests <= 0 or block_duration_ms <= 0:
            raise ValueError("window_ms, max_requests and block_duration_ms must be positive")

        self.redis = redis_client
        self.window_ms = window_ms
        self.max_requests = max_requests
        self.block_duration_ms = block_duration_ms
        self.key_prefix = key_prefix
        self.clock = clock

    def _keys(self, identifier: str) -> tuple[str, str]:
        return (
            f"{self.key_prefix}:rate_limit:sms:{identifier}",
            f"{self.key_prefix}:rate_limit:block:{identifier}",
        )

    async def evaluate(self, identifier: str) -> RateLimitDecision:
        """
        Check and record one request for ``identifier``.

        Args:
            identifier: Caller/tenant key

        Returns:
            RateLimitDecision. A rejected decision always has ``blocked=True``:
            either an existing block is in effect or this call created one.
        """
        now = self.clock()
        key, block_key = self._keys(identifier)
        # Unique member so same-millisecond admissions don't collapse
        member = f"{now}-{uuid.uuid4().hex[:12]}"

        try:
            result = await self.redis.client.eval(
                self.EVALUATE_LUA_SCRIPT,
                2,
                key,
                block_key,
                str(now),
                str(self.window_ms),
                str(self.max_requests),
                str(self.block_duration_ms),
                member,
                str(now + self.block_duration_ms),
            )
        except Exception as e:
            logger.error(
                "Rate limiter Redis error, failing open",
                error=str(e),
                error_type=type(e).__name__,
                identifier=identifier,
            )
            return RateLimitDecision(
                allowed=True,
                remaining=max(0, self.max_requests - 1),
                reset_time=now + self.window_ms,
                blocked=False,
                limit=self.max_requests,
                checked_at=now,
                error="rate_limiter_error",
            )

        allowed = bool(int(result[0]))
        blocked = bool(int(result[3]))
        decision = RateLimitDecision(
            allowed=allowed,
            remaining=int(result[1]),
            reset_time=int(result[2]),
            blocked=blocked,
            limit=self.max_requests,
            block_duration_remaining=int(result[4]) if blocked else None,
            checked_at=now,
        )

        if not allowed:
            logger.warning(
                "Identifier rate limited",
                identifier=identifier,
                block_duration_remaining=decision.block_duration_remaining,
            )

        return decision

    async def get_status(self, identifier: str) -> RateLimitDecision:
        """
        Report the current window for ``identifier`` without mutating it.

        Unlike ``evaluate`` this never prunes, records, or creates a block.
        """
        now = self.clock()
        key, block_key = self._keys(identifier)
        window_start = now - self.window_ms

        try:
            async with self.redis.client.pipeline(transaction=True) as pipe:
                pipe.get(block_key)
                pipe.zcount(key, f"({window_start}", "+inf")
                pipe.zrangebyscore(key, f"({window_start}", "+inf", start=0, num=1, withscores=True)
                blocked_raw, current_count, oldest = await pipe.execute()
        except Exception as e:
            logger.error("Error getting rate limit status", identifier=identifier, error=str(e))
            return RateLimitDecision(
                allowed=True,
                remaining=self.max_requests,
                reset_time=now + self.window_ms,
                blocked=False,
                limit=self.max_requests,
                checked_at=now,
                error="rate_limiter_error",
            )

        blocked_until = int(blocked_raw) if blocked_raw else 0
        if blocked_until > now:
            return RateLimitDecision(
                allowed=False,
                remaining=0,
                reset_time=blocked_until,
                blocked=True,
                limit=self.max_requests,
                block_duration_remaining=blocked_until - now,
                checked_at=now,
            )

        remaining = max(0, self.max_requests - int(current_count))
        reset_time = int(oldest[0][1]) + self.window_ms if oldest else now + self.window_ms

        return RateLimitDecision(
            allowed=remaining > 0,
            remaining=remaining,
            reset_time=reset_time,
            blocked=False,
            limit=self.max_requests,
            checked_at=now,
        )

    async def reset(self, identifier: str) -> bool:
        """Clear the window and any active block for ``identifier``."""
        key, block_key = self._keys(identifier)
        try:
            await self.redis.client.delete(key, block_key)
            logger.info("Rate limit reset", identifier=identifier)
            return True
        except Exception as e:
            logger.error("Error resetting rate limit", identifier=identifier, error=str(e))
            return False
