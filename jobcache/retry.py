"""
Resilience primitives: capped exponential backoff and circuit breakers.

Both are backend-agnostic. The cache client uses them to supervise its
Redis connection, and the webhook notifier uses them around outbound POSTs.
"""

import functools
import threading
import time
from enum import Enum
from typing import Callable, Dict, Optional, Tuple, Type, Union

from .errors import CircuitOpenError
from .logger import get_logger

logger = get_logger()


class RetryError(Exception):
    """Raised when all retry attempts are exhausted."""
    pass


def exponential_backoff(
    max_retries: int = 3,
    base_delay: float = 1.0,
    max_delay: float = 60.0,
    exponential_base: float = 2.0,
    exceptions: Tuple[Type[BaseException], ...] = (Exception,),
    on_retry: Optional[Callable] = None,
):
    """
    Decorator for retrying functions with capped exponential backoff.

    Args:
        max_retries: Maximum number of retry attempts (0 = no retries)
        base_delay: Initial delay in seconds
        max_delay: Maximum delay between retries in seconds
        exponential_base: Base for exponential calculation (delay *= base)
        exceptions: Tuple of exceptions to catch and retry
        on_retry: Optional callback function(attempt, exception, delay)

    Example:
        @exponential_backoff(max_retries=3, base_delay=0.1, exceptions=(ConnectionError,))
        def ping():
            return client.ping()
    """
    def decorator(func: Callable) -> Callable:
        @functools.wraps(func)
        def wrapper(*args, **kwargs):
            delay = base_delay

            for attempt in range(max_retries + 1):
                try:
                    return func(*args, **kwargs)
                except exceptions as e:
                    if attempt >= max_retries:
                        raise RetryError(
                            f"Failed after {max_retries + 1} attempts: {str(e)}"
                        ) from e

                    current_delay = min(delay, max_delay)
                    if on_retry:
                        on_retry(attempt + 1, e, current_delay)
                    else:
                        logger.debug(
                            "Retrying after failure",
                            function=getattr(func, "__name__", repr(func)),
                            attempt=attempt + 1,
                            delay=current_delay,
                            error=str(e),
                        )

                    time.sleep(current_delay)
                    delay *= exponential_base

            raise RetryError("Retry loop exited without a result")

        return wrapper
    return decorator


class CircuitState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitBreaker:
    """
    Circuit breaker pattern to prevent repeated calls to failing services.

    States:
    - CLOSED: Normal operation, requests pass through
    - OPEN: Too many failures, requests are rejected with CircuitOpenError
    - HALF_OPEN: One probe request is let through to test recovery

    A failing probe re-opens the circuit and restarts the recovery timer; a
    successful probe closes it and resets the failure counter.
    """

    CLOSED = CircuitState.CLOSED
    OPEN = CircuitState.OPEN
    HALF_OPEN = CircuitState.HALF_OPEN

    def __init__(
        self,
        name: str = "default",
        failure_threshold: int = 5,
        recovery_timeout: float = 60,
        expected_exception: Union[Type[BaseException], Tuple[Type[BaseException], ...]] = Exception,
        clock: Callable[[], float] = time.monotonic,
    ):
        """
        Initialize circuit breaker.

        Args:
            name: Dependency name used in logs and errors
            failure_threshold: Number of consecutive failures before opening circuit
            recovery_timeout: Seconds to wait before attempting recovery
            expected_exception: Exception type(s) that count as failure
            clock: Monotonic time source
        """
        if failure_threshold < 1:
            raise ValueError("failure_threshold must be at least 1")
        self.name = name
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self.expected_exception = expected_exception
        self._clock = clock
        self._lock = threading.Lock()
        self._probe_in_flight = False

        self.failure_count = 0
        self.last_failure_time: Optional[float] = None
        self.state = CircuitState.CLOSED

    def call(self, func: Callable, *args, **kwargs):
        """
        Execute function with circuit breaker protection.

        Raises:
            CircuitOpenError: If the circuit is OPEN, or HALF_OPEN with a probe in flight
            Original exception: If function fails
        """
        if not self.allow_request():
            raise CircuitOpenError(self.name, self._time_until_reset())

        try:
            result = func(*args, **kwargs)
        except self.expected_exception:
            self.record_failure()
            raise
        except Exception:
            self._release_probe()
            raise

        self.record_success()
        return result

    execute = call

    def allow_request(self) -> bool:
        """
        Decide whether a call may proceed, moving OPEN to HALF_OPEN once the
        recovery timeout has elapsed. Claims the probe slot when half-open.
        """
        with self._lock:
            if self.state == CircuitState.CLOSED:
                return True
            if self.state == CircuitState.OPEN:
                if not self._should_attempt_reset():
                    return False
                self.state = CircuitState.HALF_OPEN
                logger.info("Circuit breaker half-open", breaker=self.name)
            if self._probe_in_flight:
                return False
            self._probe_in_flight = True
            return True

    def record_success(self):
        """Close the circuit and reset the failure counter."""
        with self._lock:
            if self.state != CircuitState.CLOSED:
                logger.info("Circuit breaker closed", breaker=self.name)
            self.failure_count = 0
            self.state = CircuitState.CLOSED
            self._probe_in_flight = False

    def record_failure(self):
        """Record failure and open the circuit when the threshold is reached."""
        with self._lock:
            self.failure_count += 1
            self.last_failure_time = self._clock()
            self._probe_in_flight = False

            if self.state == CircuitState.HALF_OPEN:
                self.state = CircuitState.OPEN
                logger.warning("Circuit breaker re-opened after failed probe", breaker=self.name)
            elif self.state == CircuitState.CLOSED and self.failure_count >= self.failure_threshold:
                self.state = CircuitState.OPEN
                logger.error(
                    "Circuit breaker opened",
                    breaker=self.name,
                    failures=self.failure_count,
                )

    def _release_probe(self):
        with self._lock:
            self._probe_in_flight = False

    def _should_attempt_reset(self) -> bool:
        if self.last_failure_time is None:
            return True

        elapsed = self._clock() - self.last_failure_time
        return elapsed >= self.recovery_timeout

    def _time_until_reset(self) -> float:
        if self.last_failure_time is None:
            return 0

        elapsed = self._clock() - self.last_failure_time
        return max(0, self.recovery_timeout - elapsed)

    def reset(self):
        """Manually reset the circuit breaker."""
        with self._lock:
            self.failure_count = 0
            self.last_failure_time = None
            self.state = CircuitState.CLOSED
            self._probe_in_flight = False

    def snapshot(self) -> dict:
        """Return the breaker state as a JSON-friendly dict."""
        return {
            "name": self.name,
            "state": self.state.value,
            "failure_count": self.failure_count,
            "failure_threshold": self.failure_threshold,
            "recovery_timeout": self.recovery_timeout,
            "retry_after": round(self._time_until_reset(), 3) if self.state == CircuitState.OPEN else 0,
        }


class CircuitBreakerRegistry:
    """One circuit breaker per named dependency."""

    def __init__(self, failure_threshold: int = 5, recovery_timeout: float = 60):
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self._breakers: Dict[str, CircuitBreaker] = {}
        self._lock = threading.Lock()

    def get(self, name: str, **kwargs) -> CircuitBreaker:
        """
        Return the breaker for ``name``, creating it on first use.

        Keyword arguments only apply when the breaker is created.
        """
        with self._lock:
            breaker = self._breakers.get(name)
            if breaker is None:
                kwargs.setdefault("failure_threshold", self.failure_threshold)
                kwargs.setdefault("recovery_timeout", self.recovery_timeout)
                breaker = CircuitBreaker(name=name, **kwargs)
                self._breakers[name] = breaker
            return breaker

    def snapshot(self) -> Dict[str, dict]:
        with self._lock:
            breakers = list(self._breakers.values())
        return {b.name: b.snapshot() for b in breakers}

    def reset_all(self):
        with self._lock:
            breakers = list(self._breakers.values())
        for breaker in breakers:
            breaker.reset()
