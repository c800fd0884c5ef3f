"""
Exception taxonomy for the job cache layer.

Backend unavailability never escapes the cache client; the other errors
describe malformed input, local persistence failures, or rejected calls.
"""


class JobCacheError(Exception):
    """Base class for all job cache errors."""
    pass


class BackendUnavailableError(JobCacheError):
    """Raised internally when the Redis connection is down."""
    pass


class InvalidKeyError(JobCacheError, ValueError):
    """Raised when a key component is empty or contains reserved characters."""
    pass


class SerializationError(JobCacheError, ValueError):
    """Raised when a value cannot be encoded as JSON."""
    pass


class AtomicWriteError(JobCacheError, IOError):
    """Raised when a local snapshot cannot be written, synced, or renamed."""
    pass


class CircuitOpenError(JobCacheError):
    """Raised when a circuit breaker rejects a call without attempting it."""

    def __init__(self, name: str, retry_after: float = 0.0):
        self.name = name
        self.retry_after = retry_after
        super().__init__(
            f"Circuit breaker '{name}' is OPEN. Service unavailable. "
            f"Retry after {retry_after:.0f}s"
        )
