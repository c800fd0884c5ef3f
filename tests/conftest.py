"""
Pytest configuration and shared fixtures.
"""

import pytest
import fakeredis
from pathlib import Path

from jobcache.client import CacheClient
from jobcache.config import CacheSettings
from jobcache.service import CacheService
from jobcache.store import JobResultStore


@pytest.fixture
def fake_redis():
    """In-process Redis server with decoded responses, like the real client."""
    server = fakeredis.FakeServer()
    return fakeredis.FakeRedis(server=server, decode_responses=True)


@pytest.fixture
def settings(tmp_path) -> CacheSettings:
    """Settings for tests: local output under tmp_path, no CONFIG SET calls."""
    return CacheSettings(
        output_dir=tmp_path / "results",
        max_memory=None,
        max_memory_policy=None,
        reconnect_attempts=0,
        reconnect_base_delay=0.01,
    )


@pytest.fixture
def client(settings, fake_redis) -> CacheClient:
    """Connected cache client backed by fakeredis."""
    c = CacheClient(settings, redis_client=fake_redis)
    assert c.connect()
    return c


@pytest.fixture
def store(client) -> JobResultStore:
    return JobResultStore(client)


@pytest.fixture
def disabled_client(tmp_path) -> CacheClient:
    """Client with Redis switched off (degraded mode)."""
    c = CacheClient(CacheSettings(disabled=True, output_dir=tmp_path / "results"))
    c.connect()
    return c


@pytest.fixture
def service(settings, fake_redis):
    """Initialized service backed by fakeredis."""
    svc = CacheService(settings, client=CacheClient(settings, redis_client=fake_redis))
    svc.init()
    yield svc
    svc.shutdown()


@pytest.fixture
def sample_records():
    return [
        {"name": f"Cafe {i}", "rating": 4.0 + (i % 10) / 10, "address": f"{i} Main St"}
        for i in range(25)
    ]


@pytest.fixture
def output_dir(tmp_path) -> Path:
    d = tmp_path / "out"
    d.mkdir()
    return d
