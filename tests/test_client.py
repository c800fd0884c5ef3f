"""
Tests for the generic cache client.
"""

import time
from unittest import mock

import pytest
import redis
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import ResponseError

from jobcache.client import CacheClient, ConnectionState
from jobcache.config import CacheSettings
from jobcache.errors import SerializationError
from jobcache.retry import CircuitBreaker, CircuitState


class TestKeyValue:

    def test_set_get(self, client):
        key = client.keys.build("job", "1")
        assert client.set(key, {"status": "queued", "n": [1, 2]})
        assert client.get(key) == {"status": "queued", "n": [1, 2]}

    def test_get_missing(self, client):
        assert client.get(client.keys.build("job", "missing")) is None

    def test_default_ttl_applied(self, client, fake_redis):
        key = client.keys.build("job", "1")
        client.set(key, "v")
        assert 0 < fake_redis.ttl(key) <= client.default_ttl

    def test_ttl_expiry(self, client):
        key = client.keys.build("temp", "1")
        client.set(key, "v", ttl=1)
        assert client.get(key) == "v"
        time.sleep(1.1)
        assert client.get(key) is None

    def test_non_positive_ttl_rejected(self, client):
        with pytest.raises(ValueError):
            client.set(client.keys.build("temp", "1"), "v", ttl=0)

    def test_unserializable_value_raises(self, client):
        with pytest.raises(SerializationError):
            client.set(client.keys.build("temp", "1"), {"bad": object()})

    def test_undecodable_value_returns_none(self, client, fake_redis):
        key = client.keys.build("temp", "1")
        fake_redis.set(key, "{not json")
        assert client.get(key) is None

    def test_delete(self, client):
        key = client.keys.build("temp", "1")
        client.set(key, 1)
        assert client.delete(key)
        assert not client.delete(key)
        assert client.get(key) is None

    def test_expire_and_ttl(self, client):
        key = client.keys.build("temp", "1")
        client.set(key, 1, ttl=100)
        assert client.expire(key, 10)
        assert 0 < client.ttl(key) <= 10
        assert client.ttl(client.keys.build("temp", "missing")) == -2

    def test_delete_pattern_scoped_to_prefix(self, client, fake_redis):
        for i in range(3):
            client.set(client.keys.build("temp", str(i)), i)
        client.set(client.keys.build("job", "keep"), "k")
        fake_redis.set("other:temp:0", "foreign")

        assert client.delete_pattern("temp:*") == 3
        assert client.get(client.keys.build("job", "keep")) == "k"
        assert fake_redis.get("other:temp:0") == "foreign"

    def test_clear_all(self, client, fake_redis):
        client.set(client.keys.build("job", "1"), 1)
        client.set(client.keys.build("job", "2"), 2)
        fake_redis.set("other:key", "x")
        assert client.clear_all() == 2
        assert fake_redis.get("other:key") == "x"


class TestCounters:

    def test_increment_and_decrement(self, client):
        key = client.keys.build("counter", "hits")
        assert client.increment(key) == 1
        assert client.increment(key, 5) == 6
        assert client.decrement(key, 2) == 4

    def test_new_counter_gets_ttl(self, client, fake_redis):
        key = client.keys.build("counter", "hits")
        client.increment(key, ttl=50)
        assert 0 < fake_redis.ttl(key) <= 50

    def test_existing_counter_keeps_expiry(self, client, fake_redis):
        key = client.keys.build("counter", "hits")
        client.increment(key, ttl=50)
        fake_redis.expire(key, 20)
        client.increment(key, ttl=50)
        assert fake_redis.ttl(key) <= 20


class TestHashesAndSets:

    def test_hash_roundtrip(self, client, fake_redis):
        key = client.keys.build("results", "job1")
        assert client.hash_set(key, "coffee", [{"name": "A"}], ttl=100)
        assert client.hash_set(key, "tea", [])
        assert client.hash_get(key, "coffee") == [{"name": "A"}]
        assert client.hash_get(key, "missing") is None
        assert client.hash_get_all(key) == {"coffee": [{"name": "A"}], "tea": []}
        assert fake_redis.ttl(key) > 0

        assert client.hash_delete(key, "tea")
        assert client.hash_get_all(key) == {"coffee": [{"name": "A"}]}

    def test_hash_get_all_missing(self, client):
        assert client.hash_get_all(client.keys.build("results", "none")) == {}

    def test_sets(self, client, fake_redis):
        key = client.keys.build("owner", "u1", "jobs")
        assert client.set_add(key, "a", "b", ttl=100)
        assert client.set_members(key) == {"a", "b"}
        assert fake_redis.ttl(key) > 0
        assert client.set_remove(key, "a")
        assert client.set_members(key) == {"b"}
        assert client.set_members(client.keys.build("owner", "nobody", "jobs")) == set()


class TestComputeIfAbsent:

    def test_producer_called_once(self, client):
        key = client.keys.build("computed", "1")
        producer = mock.Mock(return_value={"v": 1})

        assert client.compute_if_absent(key, producer) == {"v": 1}
        assert client.compute_if_absent(key, producer) == {"v": 1}
        producer.assert_called_once()

    def test_none_not_cached(self, client):
        key = client.keys.build("computed", "1")
        producer = mock.Mock(return_value=None)

        assert client.compute_if_absent(key, producer) is None
        assert client.compute_if_absent(key, producer) is None
        assert producer.call_count == 2

    def test_producer_runs_when_degraded(self, disabled_client):
        key = disabled_client.keys.build("computed", "1")
        assert disabled_client.compute_if_absent(key, lambda: 42) == 42


class TestSessionsAndQueues:

    def test_sessions(self, client):
        assert client.set_session("s1", {"user": "u1"})
        assert client.get_session("s1") == {"user": "u1"}
        assert client.delete_session("s1")
        assert client.get_session("s1") is None

    def test_queue_fifo(self, client):
        client.enqueue("work", {"n": 1})
        client.enqueue("work", {"n": 2})
        assert client.dequeue("work") == {"n": 1}
        assert client.dequeue("work") == {"n": 2}
        assert client.dequeue("work") is None


class TestDegradedMode:

    def test_disabled_client_returns_unavailable_values(self, disabled_client):
        c = disabled_client
        key = c.keys.build("job", "1")

        assert c.state == ConnectionState.DISABLED
        assert not c.connected
        assert c.get(key) is None
        assert c.set(key, 1) is False
        assert c.delete(key) is False
        assert c.delete_pattern("*") == 0
        assert c.expire(key, 10) is False
        assert c.ttl(key) is None
        assert c.increment(key) is None
        assert c.hash_set(key, "f", 1) is False
        assert c.hash_get(key, "f") is None
        assert c.hash_get_all(key) is None
        assert c.set_add(key, "m") is False
        assert c.set_members(key) == set()
        assert c.enqueue("q", 1) is False
        assert c.dequeue("q") is None
        assert c.is_healthy() is False

    def test_connect_fails_without_raising(self, settings):
        broken = mock.MagicMock()
        broken.ping.side_effect = RedisConnectionError("refused")
        c = CacheClient(settings, redis_client=broken)

        assert c.connect() is False
        assert c.state == ConnectionState.DISCONNECTED
        assert c.get(c.keys.build("job", "1")) is None

    def test_connection_lost_mid_operation(self, settings, fake_redis):
        flaky = mock.MagicMock(wraps=fake_redis)
        c = CacheClient(settings, redis_client=flaky)
        assert c.connect()

        key = c.keys.build("job", "1")
        fake_redis.set(key, '"back"')

        flaky.get.side_effect = RedisConnectionError("reset by peer")
        assert c.get(key) is None
        assert c.state == ConnectionState.DISCONNECTED

        # Next operation reconnects through a ping probe
        flaky.get.side_effect = None
        assert c.get(key) == "back"
        assert c.state == ConnectionState.CONNECTED

    def test_open_breaker_short_circuits(self, settings):
        broken = mock.MagicMock()
        broken.ping.side_effect = RedisConnectionError("refused")
        breaker = CircuitBreaker("redis", failure_threshold=1, recovery_timeout=60,
                                 expected_exception=RedisConnectionError)
        c = CacheClient(settings, breaker=breaker, redis_client=broken)

        assert c.connect() is False
        assert breaker.state == CircuitState.OPEN
        calls = broken.ping.call_count

        assert c.get(c.keys.build("job", "1")) is None
        assert broken.ping.call_count == calls
        assert broken.get.call_count == 0

    def test_backend_is_the_redis_client(self, client, fake_redis):
        assert client.backend is fake_redis

    def test_builds_redis_client_from_settings(self, settings):
        c = CacheClient(settings)
        assert c.backend is None
        assert isinstance(c._make_redis(), redis.Redis)

    def test_close(self, client):
        client.close()
        assert client.state == ConnectionState.DISCONNECTED

    def test_configure_memory_failure_is_tolerated(self, fake_redis):
        settings = CacheSettings(max_memory="1gb", max_memory_policy="allkeys-lru", reconnect_attempts=0)
        redis_client = mock.MagicMock(wraps=fake_redis)
        redis_client.config_set.side_effect = ResponseError("unknown command CONFIG")
        c = CacheClient(settings, redis_client=redis_client)
        assert c.connect()
