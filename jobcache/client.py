"""
Generic Redis cache client that degrades instead of raising.

Every operation returns a documented "unavailable" value (None, False, 0,
an empty set) when Redis cannot be reached, so callers only need error
handling for malformed input (InvalidKeyError, SerializationError).

Connection handling is explicit: ``connect()`` runs a supervised retry loop
with capped exponential backoff, each attempt routed through the client's
circuit breaker. While disconnected, each operation makes one
breaker-guarded reconnect probe; an open breaker rejects the probe cheaply.
"""

import json
from enum import Enum
from typing import Any, Callable, Dict, Optional, Set

import redis
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import RedisError
from redis.exceptions import TimeoutError as RedisTimeoutError

from .config import CacheSettings
from .errors import BackendUnavailableError, CircuitOpenError, SerializationError
from .keys import KeyBuilder
from .logger import get_logger
from .retry import CircuitBreaker, RetryError, exponential_backoff

logger = get_logger()

CONNECTION_ERRORS = (RedisConnectionError, RedisTimeoutError)
SESSION_TTL = 24 * 60 * 60
SCAN_BATCH = 500

_UNAVAILABLE = object()


class ConnectionState(str, Enum):
    DISABLED = "disabled"
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"


def encode_value(value: Any) -> str:
    """JSON-encode a value for storage, raising SerializationError on failure."""
    try:
        return json.dumps(value, ensure_ascii=False, allow_nan=False)
    except (TypeError, ValueError) as e:
        raise SerializationError(f"Value is not JSON serializable: {e}") from e


def decode_value(raw: Any) -> Any:
    if isinstance(raw, bytes):
        raw = raw.decode("utf-8")
    return json.loads(raw)


class CacheClient:
    """
    Thin wrapper over one shared ``redis.Redis`` connection pool.

    Keys passed to the operations are fully built strings; use
    ``client.keys.build(namespace, id, field)`` to make them.
    """

    def __init__(
        self,
        settings: Optional[CacheSettings] = None,
        breaker: Optional[CircuitBreaker] = None,
        redis_client: Optional[redis.Redis] = None,
    ):
        """
        Args:
            settings: Connection and TTL settings (default: CacheSettings())
            breaker: Circuit breaker guarding Redis calls (default: a new "redis" breaker)
            redis_client: Pre-built client, mainly for tests
        """
        self.settings = settings or CacheSettings()
        self.keys = KeyBuilder(self.settings.key_prefix)
        self.default_ttl = self.settings.default_ttl
        self.breaker = breaker or CircuitBreaker(
            name="redis",
            failure_threshold=self.settings.breaker_failure_threshold,
            recovery_timeout=self.settings.breaker_recovery_timeout,
            expected_exception=CONNECTION_ERRORS,
        )
        self._redis = redis_client
        self.state = ConnectionState.DISABLED if self.settings.disabled else ConnectionState.DISCONNECTED

    @property
    def connected(self) -> bool:
        return self.state == ConnectionState.CONNECTED

    @property
    def backend(self) -> Optional[redis.Redis]:
        return self._redis

    # Connection management

    def _make_redis(self) -> redis.Redis:
        s = self.settings
        common = dict(
            socket_connect_timeout=s.connect_timeout,
            socket_timeout=s.connect_timeout,
            decode_responses=True,
            health_check_interval=30,
        )
        if s.redis_url:
            return redis.Redis.from_url(s.redis_url, **common)
        return redis.Redis(
            host=s.redis_host,
            port=s.redis_port,
            db=s.redis_db,
            password=s.redis_password,
            **common,
        )

    def connect(self) -> bool:
        """
        Connect with bounded retries and capped backoff.

        Returns:
            True if connected; False if disabled or Redis stayed unreachable,
            in which case the client continues in degraded mode
        """
        if self.state == ConnectionState.DISABLED:
            logger.info("Redis disabled - running in local mode")
            return False
        if self._redis is None:
            self._redis = self._make_redis()

        s = self.settings
        self.state = ConnectionState.CONNECTING
        supervised_ping = exponential_backoff(
            max_retries=s.reconnect_attempts,
            base_delay=s.reconnect_base_delay,
            max_delay=s.reconnect_max_delay,
            exceptions=CONNECTION_ERRORS,
            on_retry=self._log_retry,
        )(self._probe)

        try:
            supervised_ping()
        except (RetryError, CircuitOpenError, RedisError) as e:
            self.state = ConnectionState.DISCONNECTED
            logger.warning("Redis not available - continuing without cache", error=str(e))
            return False

        self.state = ConnectionState.CONNECTED
        logger.info("Redis cache client connected", prefix=self.keys.prefix)
        self._configure_memory()
        return True

    def _log_retry(self, attempt: int, error: Exception, delay: float):
        logger.warning("Redis reconnecting", attempt=attempt, delay=delay, error=str(error))

    def _probe(self):
        return self.breaker.call(self._redis.ping)

    def _configure_memory(self):
        s = self.settings
        if not s.max_memory and not s.max_memory_policy:
            return
        try:
            if s.max_memory:
                self._redis.config_set("maxmemory", s.max_memory)
            if s.max_memory_policy:
                self._redis.config_set("maxmemory-policy", s.max_memory_policy)
        except RedisError as e:
            # Managed Redis commonly forbids CONFIG SET.
            logger.warning("Could not apply Redis memory policy", error=str(e))
            return
        logger.info(
            "Redis memory limit applied",
            maxmemory=s.max_memory,
            policy=s.max_memory_policy,
        )

    def _ensure_connected(self):
        if self.state == ConnectionState.CONNECTED:
            return
        if self.state == ConnectionState.DISABLED or self._redis is None:
            raise BackendUnavailableError(f"Redis is {self.state.value}")
        try:
            self._probe()
        except CircuitOpenError as e:
            raise BackendUnavailableError(str(e)) from e
        except RedisError as e:
            raise BackendUnavailableError(f"Reconnect failed: {e}") from e
        self.state = ConnectionState.CONNECTED
        logger.info("Redis reconnected")

    def _mark_disconnected(self, operation: str, error: Exception):
        if self.state == ConnectionState.CONNECTED:
            logger.warning("Redis connection lost", operation=operation, error=str(error))
        self.state = ConnectionState.DISCONNECTED
        logger.record_error(operation, type(error).__name__)

    def run(self, operation: str, fn: Callable[[], Any], default: Any = None) -> Any:
        """
        Run ``fn`` against Redis, returning ``default`` when the backend is unavailable.

        Args:
            operation: Name used in logs and metrics
            fn: Zero-argument callable issuing the Redis commands
            default: Value returned when Redis is down or the call fails

        Returns:
            The result of ``fn`` or ``default``
        """
        try:
            self._ensure_connected()
            return self.breaker.call(fn)
        except (BackendUnavailableError, CircuitOpenError):
            logger.record_degraded(operation)
            return default
        except CONNECTION_ERRORS as e:
            self._mark_disconnected(operation, e)
            return default
        except RedisError as e:
            logger.error(f"Cache {operation} error", error=str(e))
            logger.record_error(operation, type(e).__name__)
            return default

    def close(self):
        if self._redis is not None:
            try:
                self._redis.close()
            except RedisError as e:
                logger.warning("Error closing Redis connection", error=str(e))
            logger.info("Redis connection closed")
        if self.state != ConnectionState.DISABLED:
            self.state = ConnectionState.DISCONNECTED

    def is_healthy(self) -> bool:
        """Ping Redis; False when disabled, disconnected or failing."""
        return bool(self.run("ping", lambda: self._redis.ping(), False))

    # Helpers

    def _resolve_ttl(self, ttl: Optional[int]) -> int:
        if ttl is None:
            ttl = self.default_ttl
        ttl = int(ttl)
        if ttl <= 0:
            raise ValueError(f"TTL must be a positive number of seconds, got {ttl}")
        return ttl

    def decode(self, key: str, raw: Any) -> Any:
        """Decode a raw stored value, logging and returning None if it is not JSON."""
        try:
            return decode_value(raw)
        except (ValueError, UnicodeDecodeError) as e:
            logger.error("Undecodable cache value", key=key, error=str(e))
            return None

    # Key/value

    def get(self, key: str) -> Any:
        raw = self.run("get", lambda: self._redis.get(key), _UNAVAILABLE)
        if raw is _UNAVAILABLE:
            return None
        if raw is None:
            logger.record_miss("get")
            logger.debug("Cache miss", key=key)
            return None
        logger.record_hit("get")
        return self.decode(key, raw)

    def set(self, key: str, value: Any, ttl: Optional[int] = None) -> bool:
        payload = encode_value(value)
        ttl = self._resolve_ttl(ttl)
        ok = self.run("set", lambda: self._redis.set(key, payload, ex=ttl), False)
        if ok:
            logger.debug("Cache set", key=key, ttl=ttl)
        return bool(ok)

    def delete(self, key: str) -> bool:
        deleted = self.run("delete", lambda: self._redis.delete(key), 0)
        return bool(deleted)

    def delete_pattern(self, pattern: str) -> int:
        """Delete every key matching ``pattern`` (relative to the prefix)."""
        full_pattern = self.keys.pattern(pattern)

        def _delete():
            deleted = 0
            batch = []
            for key in self._redis.scan_iter(match=full_pattern, count=SCAN_BATCH):
                batch.append(key)
                if len(batch) >= SCAN_BATCH:
                    deleted += self._redis.delete(*batch)
                    batch = []
            if batch:
                deleted += self._redis.delete(*batch)
            return deleted

        count = self.run("delete_pattern", _delete, 0)
        if count:
            logger.info("Cache pattern cleared", pattern=pattern, deleted=count)
        return count

    def clear_all(self) -> int:
        """Delete every key under this client's prefix."""
        count = self.delete_pattern("*")
        logger.warning("All cache entries cleared", prefix=self.keys.prefix, deleted=count)
        return count

    def expire(self, key: str, ttl: int) -> bool:
        ttl = self._resolve_ttl(ttl)
        return bool(self.run("expire", lambda: self._redis.expire(key, ttl), False))

    def ttl(self, key: str) -> Optional[int]:
        """Remaining TTL in seconds; -1 for no expiry, -2 for missing, None when unavailable."""
        return self.run("ttl", lambda: self._redis.ttl(key), None)

    # Counters

    def _add(self, operation: str, key: str, amount: int, ttl: Optional[int]) -> Optional[int]:
        ttl = self._resolve_ttl(ttl)

        def _incr():
            pipe = self._redis.pipeline(transaction=True)
            # Starts the window only when the key is new
            pipe.set(key, 0, ex=ttl, nx=True)
            pipe.incrby(key, amount)
            return pipe.execute()[-1]

        return self.run(operation, _incr, None)

    def increment(self, key: str, amount: int = 1, ttl: Optional[int] = None) -> Optional[int]:
        """
        Atomically add ``amount``; a new counter starts with ``ttl`` (default TTL)
        and existing counters keep their expiry.
        """
        return self._add("increment", key, amount, ttl)

    def decrement(self, key: str, amount: int = 1, ttl: Optional[int] = None) -> Optional[int]:
        return self._add("decrement", key, -amount, ttl)

    # Hashes

    def hash_set(self, key: str, field: str, value: Any, ttl: Optional[int] = None) -> bool:
        payload = encode_value(value)
        ttl = self._resolve_ttl(ttl)

        def _hset():
            pipe = self._redis.pipeline(transaction=True)
            pipe.hset(key, field, payload)
            pipe.expire(key, ttl)
            pipe.execute()
            return True

        return bool(self.run("hash_set", _hset, False))

    def hash_get(self, key: str, field: str) -> Any:
        raw = self.run("hash_get", lambda: self._redis.hget(key, field), _UNAVAILABLE)
        if raw is _UNAVAILABLE:
            return None
        if raw is None:
            logger.record_miss("hash_get")
            return None
        logger.record_hit("hash_get")
        return self.decode(key, raw)

    def hash_get_all(self, key: str) -> Optional[Dict[str, Any]]:
        """All fields of a hash; {} when missing, None when unavailable."""
        raw = self.run("hash_get_all", lambda: self._redis.hgetall(key), None)
        if raw is None:
            return None
        result = {}
        for field, value in raw.items():
            if isinstance(field, bytes):
                field = field.decode("utf-8")
            try:
                result[field] = decode_value(value)
            except (ValueError, UnicodeDecodeError):
                result[field] = value
        return result

    def hash_delete(self, key: str, field: str) -> bool:
        return bool(self.run("hash_delete", lambda: self._redis.hdel(key, field), 0))

    # Sets

    def set_add(self, key: str, *members: str, ttl: Optional[int] = None) -> bool:
        ttl = self._resolve_ttl(ttl)

        def _sadd():
            pipe = self._redis.pipeline(transaction=True)
            pipe.sadd(key, *members)
            pipe.expire(key, ttl)
            pipe.execute()
            return True

        return bool(self.run("set_add", _sadd, False))

    def set_remove(self, key: str, *members: str) -> bool:
        return bool(self.run("set_remove", lambda: self._redis.srem(key, *members), 0))

    def set_members(self, key: str) -> Set[str]:
        members = self.run("set_members", lambda: self._redis.smembers(key), None)
        if not members:
            return set()
        return {m.decode("utf-8") if isinstance(m, bytes) else m for m in members}

    # Compute-if-absent

    def compute_if_absent(self, key: str, producer: Callable[[], Any], ttl: Optional[int] = None) -> Any:
        """
        Return the cached value, or call ``producer`` once, cache and return its result.

        There is no cross-process lock: two concurrent callers may both run
        the producer. A None result is returned but not cached.
        """
        cached = self.get(key)
        if cached is not None:
            return cached

        value = producer()
        if value is not None:
            self.set(key, value, ttl)
        return value

    # Sessions

    def set_session(self, session_id: str, data: Any, ttl: int = SESSION_TTL) -> bool:
        return self.set(self.keys.build("session", session_id), data, ttl)

    def get_session(self, session_id: str) -> Any:
        return self.get(self.keys.build("session", session_id))

    def delete_session(self, session_id: str) -> bool:
        return self.delete(self.keys.build("session", session_id))

    # Queues

    def enqueue(self, queue_name: str, item: Any, ttl: Optional[int] = None) -> bool:
        key = self.keys.build("queue", queue_name)
        payload = encode_value(item)
        ttl = self._resolve_ttl(ttl)

        def _push():
            pipe = self._redis.pipeline(transaction=True)
            pipe.rpush(key, payload)
            pipe.expire(key, ttl)
            pipe.execute()
            return True

        return bool(self.run("enqueue", _push, False))

    def dequeue(self, queue_name: str) -> Any:
        key = self.keys.build("queue", queue_name)
        raw = self.run("dequeue", lambda: self._redis.lpop(key), None)
        if raw is None:
            return None
        return self.decode(key, raw)
