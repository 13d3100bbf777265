"""In-memory fixed window rate limiter and progressive slow-down."""

from __future__ import annotations

import math
import time
from dataclasses import dataclass
from threading import Lock
from typing import Callable, Protocol


@dataclass(frozen=True, slots=True)
class RateLimitDecision:
    """Outcome of counting one request against a window."""

    allowed: bool
    count: int
    limit: int
    reset_after: float

    @property
    def remaining(self) -> int:
        return max(self.limit - self.count, 0)

    @property
    def retry_after(self) -> int:
        """Whole seconds until the window resets, never less than one."""
        return max(math.ceil(self.reset_after), 1)


class RateLimiter(Protocol):
    async def hit(self, key: str) -> RateLimitDecision: ...


class FixedWindowRateLimiter:
    """Thread-safe fixed window counter.

    Windows are aligned to multiples of ``window_seconds`` on the supplied
    clock, so every key resets at the same boundary. Rejected requests still
    count toward the window.
    """

    def __init__(
        self,
        max_requests: int,
        window_seconds: int,
        clock: Callable[[], float] = time.time,
    ) -> None:
        """Initialise limiter parameters and per-key storage."""
        if max_requests < 1 or window_seconds < 1:
            raise ValueError("max_requests and window_seconds must be positive")
        self._max_requests = max_requests
        self._window = window_seconds
        self._clock = clock
        self._counts: dict[str, int] = {}
        self._window_start = 0.0
        self._lock = Lock()

    def _count(self, key: str) -> RateLimitDecision:
        now = self._clock()
        window_start = math.floor(now / self._window) * self._window
        with self._lock:
            if window_start != self._window_start:
                # every key shares the boundary, so the old window is stale as a whole
                self._counts.clear()
                self._window_start = window_start
            count = self._counts.get(key, 0) + 1
            self._counts[key] = count
        return RateLimitDecision(
            allowed=count <= self._max_requests,
            count=count,
            limit=self._max_requests,
            reset_after=window_start + self._window - now,
        )

    async def hit(self, key: str) -> RateLimitDecision:
        """Count a request for ``key`` and report whether it is within the limit."""
        return self._count(key)

    def reset(self) -> None:
        with self._lock:
            self._counts.clear()


class ProgressiveDelay:
    """Adds a growing delay once a client passes ``delay_after`` requests in a window.

    The delay is ``count * step_ms`` capped at ``max_delay_ms``. It never
    rejects a request.
    """

    def __init__(self, counter: RateLimiter, *, delay_after: int, step_ms: int, max_delay_ms: int) -> None:
        self._counter = counter
        self._delay_after = delay_after
        self._step_ms = step_ms
        self._max_delay_ms = max_delay_ms

    def delay_for_count(self, count: int) -> float:
        """Return the delay in seconds for the ``count``-th request of a window."""
        if count <= self._delay_after:
            return 0.0
        return min(count * self._step_ms, self._max_delay_ms) / 1000

    async def delay_for(self, key: str) -> float:
        decision = await self._counter.hit(key)
        return self.delay_for_count(decision.count)
