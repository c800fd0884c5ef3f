"""
Fixed-window rate limiter backed by the cache client.

The counter and its window are created together in one transaction, and an
existing window is never extended. When Redis is unavailable the limiter
fails open so a cache outage never blocks traffic.
"""

import hashlib
from dataclasses import dataclass

from .client import CacheClient
from .errors import InvalidKeyError
from .logger import get_logger

logger = get_logger()


@dataclass(frozen=True)
class RateLimitResult:
    allowed: bool
    remaining: int
    count: int = 0


class RateLimiter:
    def __init__(self, client: CacheClient, namespace: str = "ratelimit"):
        self.client = client
        self.namespace = namespace

    def _key(self, identifier: str) -> str:
        # Identifiers such as IPv6 addresses contain the key separator.
        if not isinstance(identifier, str) or not identifier:
            raise InvalidKeyError("Rate limit identifier must be a non-empty string")
        digest = hashlib.sha1(identifier.encode("utf-8")).hexdigest()
        return self.client.keys.build(self.namespace, digest)

    def check_limit(self, identifier: str, limit: int, window_seconds: int) -> RateLimitResult:
        """
        Count one request for ``identifier`` and decide whether it is allowed.

        Args:
            identifier: Caller identity (API key, user id, IP address)
            limit: Requests allowed per window
            window_seconds: Window length in seconds

        Returns:
            RateLimitResult with allowed = count <= limit and
            remaining = max(0, limit - count)
        """
        if limit < 0 or window_seconds <= 0:
            raise ValueError("limit must be >= 0 and window_seconds > 0")

        try:
            key = self._key(identifier)
        except InvalidKeyError as e:
            logger.error("Rate limit check with invalid identifier", identifier=repr(identifier), error=str(e))
            return RateLimitResult(allowed=True, remaining=limit)

        count = self.client.increment(key, 1, ttl=window_seconds)
        if count is None:
            logger.debug("Rate limiter failing open", identifier=identifier)
            return RateLimitResult(allowed=True, remaining=limit)

        allowed = count <= limit
        if not allowed:
            logger.info("Rate limit exceeded", identifier=identifier, count=count, limit=limit)
        return RateLimitResult(allowed=allowed, remaining=max(0, limit - count), count=count)

    def reset(self, identifier: str) -> bool:
        return self.client.delete(self._key(identifier))
