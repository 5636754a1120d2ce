"""
Per-client sliding-window rate limit for the validation API.

Counts live in process memory; each worker process enforces its own window.
"""
import math
import threading
import time
from collections import defaultdict, deque
from typing import Callable, Deque, Dict, Optional

from fastapi import Request

from sp_validator.core.config import settings
from sp_validator.core.errors import RateLimitExceeded

# Buckets idle this long are dropped on the next sweep
IDLE_BUCKET_SECONDS = 3600
SWEEP_EVERY = 1000


class RateLimiter:
    """
    Sliding window of request timestamps per key.

    Thread-safe; the limit and window are read on every check so settings
    changes take effect without rebuilding the limiter.
    """

    def __init__(self, clock: Optional[Callable[[], float]] = None):
        self.buckets: Dict[str, Deque[float]] = defaultdict(deque)
        self._clock = clock or time.time
        self._lock = threading.Lock()
        self._checks = 0

    def check(self, key: str, limit: int, window_seconds: int) -> int:
        """
        Record one request for ``key`` and return how many remain in the window.

        Raises:
            RateLimitExceeded: 429 once ``limit`` requests fall inside the window
        """
        now = self._clock()

        with self._lock:
            self._checks += 1
            if self._checks % SWEEP_EVERY == 0:
                self._sweep(now)

            bucket = self.buckets[key]
            while bucket and bucket[0] <= now - window_seconds:
                bucket.popleft()

            if len(bucket) >= limit:
                retry_after = max(math.ceil(bucket[0] + window_seconds - now), 1)
                raise RateLimitExceeded(retry_after)

            bucket.append(now)
            return limit - len(bucket)

    def _sweep(self, now: float) -> int:
        stale = [key for key, bucket in self.buckets.items() if not bucket or bucket[-1] <= now - IDLE_BUCKET_SECONDS]
        for key in stale:
            del self.buckets[key]
        return len(stale)


rate_limiter = RateLimiter()


def _client_ip(request: Request) -> str:
    return request.client.host if request.client else "unknown"


async def rate_limit_by_ip(request: Request) -> None:
    """Dependency applying the per-IP API rate limit."""
    rate_limiter.check(
        key=f"ip:{_client_ip(request)}",
        limit=settings.RATE_LIMIT_REQUESTS,
        window_seconds=settings.RATE_LIMIT_WINDOW_SECONDS,
    )
