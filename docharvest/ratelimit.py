"""Per-host politeness limiter.

One token bucket per host. A caller that finds the bucket empty reserves the
next token anyway (the balance goes negative) and sleeps outside the lock, so
concurrent workers hitting the same host queue up one interval apart instead
of all waking at once.
"""

import threading
import time
from typing import Callable, Dict, Optional
from urllib.parse import urlsplit


class TokenBucket:
    def __init__(self, rate_per_sec: float, capacity: float = 1.0,
                 clock: Callable[[], float] = time.monotonic):
        self.rate_per_sec = rate_per_sec
        self.capacity = capacity
        self.tokens = capacity
        self._clock = clock
        self._last = clock()
        self._lock = threading.Lock()

    def reserve(self) -> float:
        """Take one token and return how long the caller must wait for it."""
        with self._lock:
            now = self._clock()
            elapsed = max(0.0, now - self._last)
            self._last = now
            self.tokens = min(self.capacity, self.tokens + elapsed * self.rate_per_sec)
            self.tokens -= 1.0
            if self.tokens >= 0:
                return 0.0
            return -self.tokens / self.rate_per_sec


class HostRateLimiter:
    """Minimum interval between requests to the same host.

    `min_interval` applies to every host unless `host_intervals` overrides it.
    An interval of 0 disables limiting for that host.
    """

    def __init__(self, min_interval: float = 1.0, host_intervals: Optional[Dict[str, float]] = None,
                 burst: float = 1.0, clock: Callable[[], float] = time.monotonic,
                 sleep: Callable[[float], None] = time.sleep):
        self.min_interval = min_interval
        self.host_intervals = {h.lower(): v for h, v in (host_intervals or {}).items()}
        self.burst = burst
        self._clock = clock
        self._sleep = sleep
        self._buckets: Dict[str, TokenBucket] = {}
        self._lock = threading.Lock()

    def interval_for(self, host: str) -> float:
        if host in self.host_intervals:
            return self.host_intervals[host]
        # ".example.org" entries match any subdomain
        for rule, interval in self.host_intervals.items():
            if rule.startswith(".") and host.endswith(rule):
                return interval
        return self.min_interval

    def _bucket(self, host: str) -> Optional[TokenBucket]:
        with self._lock:
            if host not in self._buckets:
                interval = self.interval_for(host)
                if interval <= 0:
                    return None
                self._buckets[host] = TokenBucket(1.0 / interval, self.burst, clock=self._clock)
            return self._buckets[host]

    def acquire(self, url: str) -> float:
        """Block until a request to `url`'s host is allowed. Returns seconds waited."""
        host = (urlsplit(url).hostname or "").lower()
        bucket = self._bucket(host)
        if bucket is None:
            return 0.0
        wait = bucket.reserve()
        if wait > 0:
            self._sleep(wait)
        return wait
