import pytest

from errors import CapacityTimeoutError, ErrorKind
from utils import RateLimiter, RetryHelper


class FakeClock:
    def __init__(self, start=1000.0):
        self.now = start
        self.sleeps = []

    def __call__(self):
        return self.now

    async def sleep(self, delay):
        self.sleeps.append(delay)
        self.now += delay


def test_request_ceiling():
    clock = FakeClock()
    limiter = RateLimiter(requests_per_minute=2, tokens_per_minute=1000, clock=clock)
    limiter.record_request(10)
    assert limiter.can_proceed(10)
    limiter.record_request(10)
    assert not limiter.can_proceed(0)


def test_token_ceiling_counts_estimate():
    clock = FakeClock()
    limiter = RateLimiter(requests_per_minute=100, tokens_per_minute=1000, clock=clock)
    limiter.record_request(900)
    assert limiter.can_proceed(100)
    assert not limiter.can_proceed(101)


def test_window_expiry_frees_capacity():
    clock = FakeClock()
    limiter = RateLimiter(requests_per_minute=1, tokens_per_minute=1000, clock=clock)
    limiter.record_request(500)
    assert not limiter.can_proceed()
    clock.now += 59
    assert not limiter.can_proceed()
    clock.now += 1.5
    assert limiter.can_proceed()
    stats = limiter.get_usage_stats()
    assert stats["requests_in_window"] == 0
    assert stats["tokens_in_window"] == 0


def test_time_until_capacity_points_at_oldest_entry():
    clock = FakeClock()
    limiter = RateLimiter(requests_per_minute=10, tokens_per_minute=1000, clock=clock)
    limiter.record_request(600)
    clock.now += 20
    limiter.record_request(300)
    # Needs the first record (600 tokens) to expire: 40 more seconds
    assert limiter.time_until_capacity(400) == pytest.approx(40.0)
    assert limiter.time_until_capacity(100) == 0.0


@pytest.mark.asyncio
async def test_await_capacity_sleeps_in_bounded_increments():
    clock = FakeClock()
    limiter = RateLimiter(requests_per_minute=1, tokens_per_minute=1000, max_wait=120, clock=clock, sleep=clock.sleep)
    limiter.record_request(10)
    waited = await limiter.await_capacity(10)
    assert waited >= 60
    assert all(0 < delay <= 5.0 for delay in clock.sleeps)
    assert limiter.can_proceed(10)


@pytest.mark.asyncio
async def test_await_capacity_times_out():
    clock = FakeClock()
    limiter = RateLimiter(requests_per_minute=1, tokens_per_minute=1000, max_wait=10, clock=clock, sleep=clock.sleep)
    limiter.record_request(10)
    with pytest.raises(CapacityTimeoutError) as excinfo:
        await limiter.await_capacity(10)
    assert excinfo.value.kind == ErrorKind.CAPACITY_TIMEOUT
    assert not excinfo.value.retryable
    assert sum(clock.sleeps) <= 10 + 1e-9


@pytest.mark.asyncio
async def test_oversized_request_fails_immediately():
    clock = FakeClock()
    limiter = RateLimiter(requests_per_minute=10, tokens_per_minute=1000, clock=clock, sleep=clock.sleep)
    with pytest.raises(CapacityTimeoutError):
        await limiter.await_capacity(5000)
    assert clock.sleeps == []


def test_retry_helper_delays_never_shrink_and_cap():
    for rng_value in (0.0, 0.5, 0.999):
        helper = RetryHelper(max_retries=6, base_delay=1.0, max_delay=10.0, jitter=0.25, rng=lambda: rng_value)
        delays = [helper.calculate_delay(i) for i in range(7)]
        assert delays == sorted(delays)
        assert max(delays) <= 10.0


def test_retry_helper_without_jitter_doubles():
    helper = RetryHelper(base_delay=0.5, max_delay=100, jitter=0)
    assert [helper.calculate_delay(i) for i in range(4)] == [0.5, 1.0, 2.0, 4.0]
