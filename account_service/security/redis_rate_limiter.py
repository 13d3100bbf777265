"""Redis-backed fixed window rate limiter."""

from __future__ import annotations

import time
from typing import Final

from redis.asyncio import Redis
from redis.exceptions import ResponseError

from .rate_limiter import RateLimitDecision


class RedisFixedWindowRateLimiter:
    """Distributed fixed window limiter implemented with Redis counters."""

    _LUA_SCRIPT: Final[str] = """
    local key = KEYS[1]
    local window_ms = tonumber(ARGV[1])

    local current = redis.call('INCR', key)
    if current == 1 then
        redis.call('PEXPIRE', key, window_ms)
    end
    return current
    """

    def __init__(
        self,
        client: Redis,
        *,
        max_requests: int,
        window_seconds: int,
        key_prefix: str = "rate"
    ) -> None:
        """Bind the limiter to ``client`` and register the counting script."""
        self._client = client
        self._max_requests = max_requests
        self._window_ms = window_seconds * 1000
        self._key_prefix = key_prefix
        self._script = client.register_script(self._LUA_SCRIPT)

    async def hit(self, key: str) -> RateLimitDecision:
        """Count a request for ``key`` within the current distributed window."""
        now_ms = int(time.time() * 1000)
        window_index = now_ms // self._window_ms
        redis_key = f"{self._key_prefix}:{key}:{window_index}"
        try:
            count = int(await self._script(keys=[redis_key], args=[self._window_ms]))
        except ResponseError as exc:
            message = str(exc).lower()
            if "unknown command `evalsha`" in message or "unknown command `eval`" in message:
                count = await self._hit_fallback(redis_key)
            else:
                raise
        window_end_ms = (window_index + 1) * self._window_ms
        return RateLimitDecision(
            allowed=count <= self._max_requests,
            count=count,
            limit=self._max_requests,
            reset_after=(window_end_ms - now_ms) / 1000,
        )

    async def _hit_fallback(self, redis_key: str) -> int:
        """Count with plain INCR/PEXPIRE for servers that refuse scripting."""
        count = int(await self._client.incr(redis_key))
        if count == 1:
            await self._client.pexpire(redis_key, self._window_ms)
        return count
