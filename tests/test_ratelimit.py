import threading
import time

import pytest

from docharvest.ratelimit import HostRateLimiter, TokenBucket


class FakeClock:
    def __init__(self):
        self.now = 100.0

    def __call__(self) -> float:
        return self.now


def test_same_host_requests_queue_one_interval_apart():
    clock = FakeClock()
    slept = []
    limiter = HostRateLimiter(min_interval=2.0, clock=clock, sleep=slept.append)

    waits = [limiter.acquire("https://site.test/page/%d" % i) for i in range(3)]

    assert waits == [0.0, 2.0, 4.0]
    assert slept == [2.0, 4.0]


def test_other_hosts_are_not_delayed():
    clock = FakeClock()
    slept = []
    limiter = HostRateLimiter(min_interval=2.0, clock=clock, sleep=slept.append)

    limiter.acquire("https://a.test/1")
    assert limiter.acquire("https://b.test/1") == 0.0
    assert limiter.acquire("https://A.TEST/2") == 2.0
    assert slept == [2.0]


def test_tokens_refill_with_time():
    clock = FakeClock()
    limiter = HostRateLimiter(min_interval=2.0, clock=clock, sleep=lambda s: None)

    limiter.acquire("https://site.test/")
    clock.now += 5.0
    assert limiter.acquire("https://site.test/") == 0.0


def test_host_overrides_and_suffix_rules():
    limiter = HostRateLimiter(min_interval=2.0, host_intervals={
        "slow.test": 10.0,
        ".cdn.test": 0,
    })
    assert limiter.interval_for("slow.test") == 10.0
    assert limiter.interval_for("files.cdn.test") == 0
    assert limiter.interval_for("other.test") == 2.0


def test_zero_interval_disables_limiting():
    slept = []
    limiter = HostRateLimiter(min_interval=0, sleep=slept.append)
    assert all(limiter.acquire("https://site.test/") == 0.0 for _ in range(5))
    assert slept == []


def test_token_bucket_burst():
    clock = FakeClock()
    bucket = TokenBucket(rate_per_sec=1.0, capacity=3, clock=clock)
    assert [bucket.reserve() for _ in range(4)] == [0.0, 0.0, 0.0, 1.0]


def test_concurrent_workers_are_spaced_out():
    limiter = HostRateLimiter(min_interval=0.05)
    waits = []
    lock = threading.Lock()

    def worker():
        w = limiter.acquire("https://site.test/x")
        with lock:
            waits.append(w)

    threads = [threading.Thread(target=worker) for _ in range(4)]
    started = time.monotonic()
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    elapsed = time.monotonic() - started

    assert sorted(waits)[0] == 0.0
    assert sorted(waits)[-1] == pytest.approx(0.15, abs=0.03)
    assert elapsed >= 0.12
