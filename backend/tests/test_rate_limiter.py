import pytest

from app.core.exceptions import RateLimitExceededError
from app.services.rate_limiter import RateLimitRule, SlidingWindowRateLimiter


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


def test_limit_is_per_key():
    limiter = SlidingWindowRateLimiter(clock=FakeClock())
    rules = (RateLimitRule(2, 60),)

    limiter.check("login:ip:1", rules)
    limiter.check("login:ip:1", rules)
    limiter.check("login:ip:2", rules)
    with pytest.raises(RateLimitExceededError):
        limiter.check("login:ip:1", rules)


def test_window_slides():
    clock = FakeClock()
    limiter = SlidingWindowRateLimiter(clock=clock)
    rules = (RateLimitRule(1, 60),)

    limiter.check("k", rules)
    clock.now += 30
    with pytest.raises(RateLimitExceededError) as exc_info:
        limiter.check("k", rules)
    assert exc_info.value.details["retry_after"] == 30

    clock.now += 31
    limiter.check("k", rules)


def test_longest_window_applies():
    clock = FakeClock()
    limiter = SlidingWindowRateLimiter(clock=clock)
    rules = (RateLimitRule(5, 60), RateLimitRule(2, 3600))

    limiter.check("k", rules)
    clock.now += 120
    limiter.check("k", rules)
    clock.now += 120
    with pytest.raises(RateLimitExceededError) as exc_info:
        limiter.check("k", rules)
    assert exc_info.value.details["retry_after"] == 3600 - 240


def test_rejected_hits_are_not_counted():
    clock = FakeClock()
    limiter = SlidingWindowRateLimiter(clock=clock)
    rules = (RateLimitRule(1, 10),)

    limiter.check("k", rules)
    for _ in range(5):
        with pytest.raises(RateLimitExceededError):
            limiter.check("k", rules)
    clock.now += 11
    limiter.check("k", rules)


def test_reset():
    limiter = SlidingWindowRateLimiter(clock=FakeClock())
    rules = (RateLimitRule(1, 60),)
    limiter.check("a", rules)
    limiter.check("b", rules)

    limiter.reset("a")
    limiter.check("a", rules)
    with pytest.raises(RateLimitExceededError):
        limiter.check("b", rules)

    limiter.reset()
    limiter.check("b", rules)
