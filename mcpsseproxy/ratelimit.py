"""Per-client token-bucket rate limiting."""

from __future__ import annotations

import math
import threading
import time
from typing import Callable


class TokenBucket:
    """A token bucket refilled at ``rate`` tokens per second, holding up to ``burst``."""

    def __init__(
        self,
        rate: float,
        burst: int,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.rate = rate
        self.burst = burst
        self._clock = clock
        self._tokens = float(burst)
        self._last = clock()
        self._lock = threading.Lock()

    def allow(self) -> bool:
        """Take one token if available and report whether the event may happen."""
        if math.isinf(self.rate) and self.rate > 0:
            return True
        with self._lock:
            now = self._clock()
            elapsed = max(0.0, now - self._last)
            self._last = now
            self._tokens = min(float(self.burst), self._tokens + elapsed * self.rate)
            if self._tokens >= 1.0:
                self._tokens -= 1.0
                return True
            return False


class RateLimiter:
    """Keeps one token bucket per client address."""

    def __init__(
        self,
        rate: float,
        burst: int,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.rate = rate
        self.burst = burst
        self._clock = clock
        self._visitors: dict[str, TokenBucket] = {}
        self._lock = threading.Lock()

    def get_visitor(self, ip: str) -> TokenBucket:
        """Return the bucket for ``ip``, creating it on first use."""
        with self._lock:
            bucket = self._visitors.get(ip)
            if bucket is None:
                bucket = TokenBucket(self.rate, self.burst, self._clock)
                self._visitors[ip] = bucket
            return bucket

    def allow(self, ip: str) -> bool:
        """Return True if a request from ``ip`` is within its limit."""
        return self.get_visitor(ip).allow()