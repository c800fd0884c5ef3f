"""
Tests for the fixed-window rate limiter.
"""

import time

import pytest

from jobcache.ratelimit import RateLimiter


class TestRateLimiter:

    def test_allows_up_to_limit(self, client):
        limiter = RateLimiter(client)
        results = [limiter.check_limit("user-1", 5, 60) for _ in range(6)]

        assert [r.allowed for r in results] == [True] * 5 + [False]
        assert [r.remaining for r in results] == [4, 3, 2, 1, 0, 0]
        assert results[-1].count == 6

    def test_identifiers_are_independent(self, client):
        limiter = RateLimiter(client)
        for _ in range(3):
            limiter.check_limit("a", 3, 60)
        assert not limiter.check_limit("a", 3, 60).allowed
        assert limiter.check_limit("b", 3, 60).allowed

    def test_ipv6_identifier_is_limited(self, client):
        limiter = RateLimiter(client)
        results = [limiter.check_limit("2001:db8::1", 2, 60) for _ in range(5)]

        assert [r.allowed for r in results] == [True, True, False, False, False]
        assert limiter.check_limit("2001:db8::2", 2, 60).allowed

    def test_window_set_on_first_request_only(self, client, fake_redis):
        limiter = RateLimiter(client)
        limiter.check_limit("user-1", 10, 60)
        key = limiter._key("user-1")
        assert 0 < fake_redis.ttl(key) <= 60

        fake_redis.expire(key, 30)
        limiter.check_limit("user-1", 10, 60)
        assert fake_redis.ttl(key) <= 30

    def test_window_expiry_resets_count(self, client):
        limiter = RateLimiter(client)
        assert limiter.check_limit("user-1", 1, 1).allowed
        assert not limiter.check_limit("user-1", 1, 1).allowed

        time.sleep(1.1)
        result = limiter.check_limit("user-1", 1, 1)
        assert result.allowed
        assert result.count == 1

    def test_zero_limit_denies(self, client):
        result = RateLimiter(client).check_limit("user-1", 0, 60)
        assert not result.allowed
        assert result.remaining == 0

    def test_reset(self, client):
        limiter = RateLimiter(client)
        limiter.check_limit("user-1", 1, 60)
        assert limiter.reset("user-1")
        assert limiter.check_limit("user-1", 1, 60).allowed

    def test_fails_open_when_redis_disabled(self, disabled_client):
        limiter = RateLimiter(disabled_client)
        for _ in range(10):
            result = limiter.check_limit("user-1", 2, 60)
            assert result.allowed
            assert result.remaining == 2

    def test_invalid_identifier_fails_open(self, client):
        result = RateLimiter(client).check_limit("", 2, 60)
        assert result.allowed

    @pytest.mark.parametrize("limit,window", [(-1, 60), (5, 0)])
    def test_invalid_arguments(self, client, limit, window):
        with pytest.raises(ValueError):
            RateLimiter(client).check_limit("user-1", limit, window)
