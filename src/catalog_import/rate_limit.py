from __future__ import annotations

import asyncio
import time
from collections import deque


class AsyncRateLimiter:
    """Sliding-window limiter for outgoing AniList requests, shared by every page fetch."""

    def __init__(self, max_calls: int, period_seconds: float = 1.0) -> None:
        if max_calls <= 0:
            raise ValueError("max_calls must be positive")
        if period_seconds <= 0:
            raise ValueError("period_seconds must be positive")
        self.max_calls = max_calls
        self.period_seconds = period_seconds
        self._calls = deque()
        self._lock = asyncio.Lock()

    async def acquire(self) -> None:
        while True:
            async with self._lock:
                now = time.monotonic()
                while self._calls and now - self._calls[0] >= self.period_seconds:
                    self._calls.popleft()
                if len(self._calls) < self.max_calls:
                    self._calls.append(now)
                    return
                wait_seconds = self.period_seconds - (now - self._calls[0])
            await asyncio.sleep(max(wait_seconds, 0.0))


def low_budget_wait_seconds(
    remaining: int,
    *,
    low_water_mark: int,
    step_seconds: float,
    max_wait_seconds: float,
    seconds_until_reset: float | None = None,
) -> float:
    """Seconds to pause once the provider's remaining request budget runs low.

    Zero at or above ``low_water_mark``; below it the wait grows linearly with the
    shortfall and is capped by ``max_wait_seconds``. A known reset time bounds the
    wait further, since the budget refills at that point.
    """

    if remaining >= low_water_mark:
        return 0.0
    shortfall = low_water_mark - max(remaining, 0)
    wait = min(max_wait_seconds, shortfall * step_seconds)
    if seconds_until_reset is not None:
        wait = min(wait, max(seconds_until_reset, 0.0))
    return max(wait, 0.0)
