import math

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from classbook.core.exceptions import RateLimitedException
from classbook.ratelimit.config import BUCKETS
from classbook.ratelimit.identity import client_ip
from classbook.ratelimit.limiter import RateLimiter
from classbook.ratelimit.token_bucket import BucketState, token_bucket_decide


def test_new_bucket_starts_full():
    state, decision = token_bucket_decide(1_000, None, cost=1, refill_rate_per_second=1.0, capacity=5)
    assert decision.allowed
    assert decision.remaining == 4
    assert state.tokens == 4
    assert state.updated_ms == 1_000


def test_denied_call_leaves_state_untouched():
    empty = BucketState(tokens=0.0, updated_ms=1_000)
    state, decision = token_bucket_decide(1_000, empty, cost=1, refill_rate_per_second=0.5, capacity=5)
    assert state is None
    assert not decision.allowed
    assert decision.retry_after_s == pytest.approx(2.0)


def test_refill_is_capped_at_capacity():
    drained = BucketState(tokens=0.0, updated_ms=0)
    state, decision = token_bucket_decide(3_600_000, drained, cost=1, refill_rate_per_second=1.0, capacity=3)
    assert decision.allowed
    assert state.tokens == 2


def test_zero_refill_reports_infinite_retry():
    empty = BucketState(tokens=0.0, updated_ms=0)
    _, decision = token_bucket_decide(10, empty, cost=1, refill_rate_per_second=0.0, capacity=1)
    assert not decision.allowed
    assert math.isinf(decision.retry_after_s)


def test_book_policy_allows_capacity_then_blocks(fake_redis, test_settings):
    limiter = RateLimiter(fake_redis, settings=test_settings, clock=lambda: 1_700_000_000.0)
    capacity = BUCKETS["book"].capacity
    for _ in range(capacity):
        limiter.enforce("book", "203.0.113.7")

    with pytest.raises(RateLimitedException) as exc_info:
        limiter.enforce("book", "203.0.113.7")
    assert exc_info.value.status_code == 429
    assert int(exc_info.value.headers()["Retry-After"]) >= 1

    # Other callers have their own bucket
    limiter.enforce("book", "198.51.100.1")


def test_buckets_refill_over_time(fake_redis, test_settings):
    now = [1_700_000_000.0]
    limiter = RateLimiter(fake_redis, settings=test_settings, clock=lambda: now[0])
    for _ in range(BUCKETS["book:user"].capacity):
        limiter.enforce("book:user", "cust-1")
    with pytest.raises(RateLimitedException):
        limiter.enforce("book:user", "cust-1")

    now[0] += 60
    limiter.enforce("book:user", "cust-1")


def test_consume_reports_short_bucket(fake_redis, test_settings):
    limiter = RateLimiter(fake_redis, settings=test_settings, clock=lambda: 1_700_000_000.0)

    assert limiter.consume("export:cust-1", 2, 0.1, 3) is True
    assert limiter.consume("export:cust-1", 2, 0.1, 3) is False
    assert limiter.consume("export:cust-1", 1, 0.1, 3) is True


def test_disabled_limiter_never_touches_store(fake_redis, test_settings):
    settings = test_settings.model_copy(update={"rate_limit_enabled": False})
    limiter = RateLimiter(fake_redis, settings=settings)
    for _ in range(50):
        limiter.enforce("book", "203.0.113.7")
    assert fake_redis.calls == 0


class _BrokenRedis:
    def eval(self, *args, **kwargs):
        raise RedisConnectionError("connection refused")


def test_store_outage_fails_open(test_settings, caplog):
    limiter = RateLimiter(_BrokenRedis(), settings=test_settings)
    decision = limiter.evaluate("book:203.0.113.7", 1, 5 / 60, 5, bucket="book")
    assert decision.allowed
    assert decision.remaining == 5
    # enforce must not raise either
    limiter.enforce("book", "203.0.113.7")
    assert any("allowing request" in record.getMessage() for record in caplog.records)


def test_client_ip_prefers_forwarded_header():
    assert client_ip({"x-forwarded-for": "203.0.113.9, 10.0.0.1"}, "10.0.0.2") == "203.0.113.9"
    assert client_ip({"x-real-ip": "198.51.100.4"}, "10.0.0.2") == "198.51.100.4"
    assert client_ip({}, "10.0.0.2") == "10.0.0.2"
    assert client_ip({}) == "unknown"
