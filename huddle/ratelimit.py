from __future__ import annotations

import time
from typing import Callable, Dict, List

from huddle.errors import RateLimitExceeded


class RateLimiter:
    """Sliding-window counter per bucket key, in process memory."""

    def __init__(self, window_seconds: int = 60, clock: Callable[[], float] = time.time):
        self.window_seconds = int(window_seconds)
        self._clock = clock
        self._buckets: Dict[str, List[int]] = {}

    def check(
        self,
        bucket: str,
        limit: int,
        *,
        error: str = "rate_limit_exceeded",
        message: str = "Too many requests. Try again later.",
    ) -> None:
        now = int(self._clock())
        start = now - self.window_seconds
        arr = [t for t in self._buckets.get(bucket, []) if t >= start]
        if len(arr) >= limit:
            retry_after = max(1, self.window_seconds - (now - arr[0]))
            self._buckets[bucket] = arr
            raise RateLimitExceeded(message=message, error=error, retry_after_seconds=retry_after)
        arr.append(now)
        self._buckets[bucket] = arr

    def reset(self) -> None:
        self._buckets.clear()
