"""
Resilience utilities for error handling and fault tolerance.

This module provides:
- The transient/permanent error taxonomy the job queue uses to decide retries
- retry_with_backoff decorator for transient errors
- CircuitBreaker class for outbound service calls
- compute_backoff for queue-level retry scheduling
"""

import asyncio
import time
import logging
from typing import Callable, Any, Optional, TypeVar, ParamSpec
from functools import wraps
from enum import Enum

logger = logging.getLogger(__name__)

# Type variables for generic decorator
P = ParamSpec('P')
T = TypeVar('T')


class CircuitState(str, Enum):
    """Circuit breaker states."""
    CLOSED = "closed"  # Normal operation
    OPEN = "open"  # Failing, reject requests
    HALF_OPEN = "half_open"  # Testing if service recovered


# ========== Error Taxonomy ==========

class ShiplogError(Exception):
    """Base class for application errors."""
    pass


class TransientError(ShiplogError):
    """Base class for transient errors that should be retried."""

    def __init__(self, message: str, retry_after: Optional[float] = None):
        super().__init__(message)
        self.retry_after = retry_after


class PermanentError(ShiplogError):
    """Base class for errors that fail a job once, without retry."""
    pass


class CircuitBreakerOpenError(TransientError):
    """Raised when circuit breaker is open."""
    pass


class RedisConnectionError(TransientError):
    """Raised when Redis connection fails after retries."""
    pass


class ProviderError(TransientError):
    """Summarization provider failure (network, 5xx, rate limit)."""
    pass


class SummarizationTimeoutError(TransientError):
    """Summarization call exceeded its timeout."""

    def __init__(self, timeout_seconds: float):
        super().__init__(f"Summarization request timed out after {timeout_seconds}s")
        self.timeout_seconds = timeout_seconds


class DeliveryError(TransientError):
    """Delivery sink rejected or failed to accept a message."""
    pass


class DeliveryTimeoutError(TransientError):
    """Delivery call exceeded its timeout."""

    def __init__(self, timeout_seconds: float):
        super().__init__(f"Delivery request timed out after {timeout_seconds}s")
        self.timeout_seconds = timeout_seconds


class GitHubAPIError(TransientError):
    """GitHub rate limit, permission or server error."""
    pass


class ReportInProgressError(TransientError):
    """Another report run holds the report lease."""
    pass


class CommitNotFoundError(PermanentError):
    """Referenced commit no longer resolvable (force-push, deleted repo)."""
    pass


class DiffTooLargeError(PermanentError):
    """Commit diff exceeds the configured size limit."""

    def __init__(self, size: int, limit: int):
        super().__init__(f"Diff size {size} exceeds limit {limit}")
        self.size = size
        self.limit = limit


class PRValidationError(PermanentError):
    """PR metadata write is missing required fields."""
    pass


class CorruptedRecordError(PermanentError):
    """A stored record is missing required fields or holds unparsable values."""

    def __init__(self, key: str, reason: str):
        super().__init__(f"Corrupted record at {key}: {reason}")
        self.key = key
        self.reason = reason


class UnknownJobError(PermanentError):
    """Job name has no registered handler."""
    pass


class InvalidJobPayloadError(PermanentError):
    """Job payload failed validation."""
    pass


def is_transient(error: BaseException) -> bool:
    """Return True when an error should be retried by the queue."""
    return not isinstance(error, PermanentError)


def compute_backoff(
    attempt: int,
    base_delay: float,
    strategy: str = "exponential",
    max_delay: float = 3600.0
) -> float:
    """
    Compute the delay before the next queue attempt.

    Args:
        attempt: Number of attempts already made (1 after the first failure)
        base_delay: Base delay in seconds
        strategy: 'exponential' or 'fixed'
        max_delay: Upper bound in seconds

    Returns:
        Delay in seconds
    """
    if strategy == "fixed":
        return min(base_delay, max_delay)
    if strategy != "exponential":
        raise ValueError(f"Unknown backoff strategy: {strategy}")
    return min(base_delay * (2 ** max(attempt - 1, 0)), max_delay)


def retry_with_backoff(
    max_retries: int = 3,
    base_delay: float = 1.0,
    max_delay: float = 60.0,
    exponential_base: float = 2.0,
    exceptions: tuple = (Exception,)
):
    """
    Decorator for retrying functions with exponential backoff.

    Applied to Redis operations and other in-process calls where a short
    retry is cheaper than failing the whole job.

    Args:
        max_retries: Maximum number of attempts (default: 3)
        base_delay: Initial delay in seconds between retries (default: 1.0)
        max_delay: Maximum delay in seconds between retries (default: 60.0)
        exponential_base: Base for exponential backoff calculation (default: 2.0)
        exceptions: Tuple of exception types to catch and retry

    Returns:
        Decorated function with retry logic

    Example:
        @retry_with_backoff(max_retries=3, base_delay=1.0)
        async def fetch_data():
            return await client.get_data()
    """
    def decorator(func: Callable[P, T]) -> Callable[P, T]:
        @wraps(func)
        async def async_wrapper(*args: P.args, **kwargs: P.kwargs) -> T:
            last_exception = None

            for attempt in range(max_retries):
                try:
                    result = await func(*args, **kwargs)

                    if attempt > 0:
                        logger.info(
                            f"{func.__name__} succeeded on attempt {attempt + 1}/{max_retries}"
                        )

                    return result

                except exceptions as e:
                    last_exception = e

                    if attempt == max_retries - 1:
                        logger.error(
                            f"{func.__name__} failed after {max_retries} attempts: {e}",
                            exc_info=True
                        )
                        raise

                    delay = min(base_delay * (exponential_base ** attempt), max_delay)

                    logger.warning(
                        f"{func.__name__} failed on attempt {attempt + 1}/{max_retries}: {e}. "
                        f"Retrying in {delay:.1f}s..."
                    )

                    await asyncio.sleep(delay)

            raise last_exception

        @wraps(func)
        def sync_wrapper(*args: P.args, **kwargs: P.kwargs) -> T:
            last_exception = None

            for attempt in range(max_retries):
                try:
                    return func(*args, **kwargs)

                except exceptions as e:
                    last_exception = e

                    if attempt == max_retries - 1:
                        logger.error(
                            f"{func.__name__} failed after {max_retries} attempts: {e}",
                            exc_info=True
                        )
                        raise

                    delay = min(base_delay * (exponential_base ** attempt), max_delay)
                    logger.warning(
                        f"{func.__name__} failed on attempt {attempt + 1}/{max_retries}: {e}. "
                        f"Retrying in {delay:.1f}s..."
                    )
                    time.sleep(delay)

            raise last_exception

        if asyncio.iscoroutinefunction(func):
            return async_wrapper
        else:
            return sync_wrapper

    return decorator


class CircuitBreaker:
    """
    Circuit breaker for outbound service calls.

    States:
    - CLOSED: Normal operation, requests pass through
    - OPEN: Service is failing, requests are rejected immediately
    - HALF_OPEN: Testing if service recovered, limited requests allowed

    Only errors listed in ``tracked_exceptions`` count as failures, so a
    permanent 4xx from a provider does not trip the breaker.

    Args:
        failure_threshold: Consecutive failures before opening (default: 5)
        timeout: Seconds to wait before attempting recovery (default: 60)
        half_open_max_calls: Max calls allowed in half-open state (default: 3)
        name: Label used in log lines
        tracked_exceptions: Exception types that count as failures
    """

    def __init__(
        self,
        failure_threshold: int = 5,
        timeout: int = 60,
        half_open_max_calls: int = 3,
        name: str = "default",
        tracked_exceptions: tuple = (TransientError,)
    ):
        self.failure_threshold = failure_threshold
        self.timeout = timeout
        self.half_open_max_calls = half_open_max_calls
        self.name = name
        self.tracked_exceptions = tracked_exceptions

        self.failure_count = 0
        self.success_count = 0
        self.last_failure_time: Optional[float] = None
        self.state = CircuitState.CLOSED
        self.half_open_calls = 0

    async def call(self, func: Callable[[], Any]) -> Any:
        """
        Execute function with circuit breaker protection.

        Args:
            func: Zero-argument async callable

        Returns:
            Function result

        Raises:
            CircuitBreakerOpenError: If circuit is open
            Exception: Any exception raised by the function
        """
        if self.state == CircuitState.OPEN:
            if self.last_failure_time and (time.time() - self.last_failure_time) > self.timeout:
                logger.info(f"Circuit breaker {self.name} transitioning to HALF_OPEN state")
                self.state = CircuitState.HALF_OPEN
                self.half_open_calls = 0
            else:
                raise CircuitBreakerOpenError(
                    f"Circuit breaker {self.name} is OPEN. "
                    f"Will retry after {self.timeout}s timeout.",
                    retry_after=self.timeout
                )

        if self.state == CircuitState.HALF_OPEN:
            if self.half_open_calls >= self.half_open_max_calls:
                raise CircuitBreakerOpenError(
                    f"Circuit breaker {self.name} is HALF_OPEN and max test calls reached",
                    retry_after=self.timeout
                )
            self.half_open_calls += 1

        try:
            result = await func()
        except self.tracked_exceptions:
            self._record_failure()
            raise

        self._record_success()
        return result

    def _record_success(self) -> None:
        """Record successful call."""
        self.success_count += 1

        if self.state == CircuitState.HALF_OPEN:
            if self.success_count >= self.half_open_max_calls:
                logger.info(f"Circuit breaker {self.name} transitioning to CLOSED state")
                self.state = CircuitState.CLOSED
                self.failure_count = 0
                self.success_count = 0
                self.half_open_calls = 0
        elif self.state == CircuitState.CLOSED:
            self.failure_count = 0

    def _record_failure(self) -> None:
        """Record failed call."""
        self.failure_count += 1
        self.last_failure_time = time.time()

        if self.state == CircuitState.HALF_OPEN:
            logger.warning(f"Circuit breaker {self.name} transitioning to OPEN state (still failing)")
            self.state = CircuitState.OPEN
            self.success_count = 0
            self.half_open_calls = 0
        elif self.state == CircuitState.CLOSED:
            if self.failure_count >= self.failure_threshold:
                logger.warning(
                    f"Circuit breaker {self.name} transitioning to OPEN state "
                    f"(failure threshold {self.failure_threshold} exceeded)"
                )
                self.state = CircuitState.OPEN
                self.success_count = 0

    def get_state(self) -> CircuitState:
        """Get current circuit breaker state."""
        return self.state

    def reset(self) -> None:
        """Manually reset circuit breaker to closed state."""
        logger.info(f"Circuit breaker {self.name} manually reset to CLOSED state")
        self.state = CircuitState.CLOSED
        self.failure_count = 0
        self.success_count = 0
        self.half_open_calls = 0
        self.last_failure_time = None


def create_github_circuit_breaker() -> CircuitBreaker:
    """Create circuit breaker configured for GitHub API calls."""
    return CircuitBreaker(
        failure_threshold=5,
        timeout=60,
        half_open_max_calls=3,
        name="github"
    )


def create_llm_circuit_breaker() -> CircuitBreaker:
    """Create circuit breaker configured for LLM API calls."""
    return CircuitBreaker(
        failure_threshold=3,
        timeout=30,
        half_open_max_calls=2,
        name="llm"
    )


def create_delivery_circuit_breaker() -> CircuitBreaker:
    """Create circuit breaker configured for chat webhook delivery."""
    return CircuitBreaker(
        failure_threshold=3,
        timeout=60,
        half_open_max_calls=1,
        name="delivery"
    )
