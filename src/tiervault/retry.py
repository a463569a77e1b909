"""
Backoff and retry for database work.

Maintenance statements fail for transient reasons: lock contention with
the application, a statement timeout, a connection dropped by a failover.
Two things retry in tiervault:

- Inventory collection retries any failure (``retry_async``); a run that
  cannot see the whole inventory must not act on part of it.
- The Action Executor asks a ``RetryPolicy`` per failed attempt; by default
  only transient errors are retried and permanent ones fail at once.
"""

import asyncio
import logging
import random
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Protocol, TypeVar, runtime_checkable

from tiervault.exceptions import TransientActionError

logger = logging.getLogger(__name__)

T = TypeVar("T")

ExceptionTypes = tuple[type[BaseException], ...]

# asyncio.TimeoutError is TimeoutError on 3.11+; OSError covers socket errors
TRANSIENT_EXCEPTIONS: ExceptionTypes = (
    TransientActionError,
    ConnectionError,
    TimeoutError,
    OSError,
)


@dataclass(frozen=True)
class RetryConfig:
    """
    Retry schedule.

    Attributes:
        max_retries: Retries after the first attempt (0 = single attempt)
        initial_delay: Seconds before the first retry
        max_delay: Upper bound for any single delay
        exponential_base: Growth factor between retries
        jitter: Random spread as a fraction of the delay (0-1)

    Example:
        >>> # 3 attempts, waiting 2s then 4s
        >>> RetryConfig(max_retries=2, initial_delay=2.0)
    """

    max_retries: int = 2
    initial_delay: float = 2.0
    max_delay: float = 60.0
    exponential_base: float = 2.0
    jitter: float = 0.0

    def __post_init__(self) -> None:
        if self.max_retries < 0:
            raise ValueError(f"max_retries must be >= 0, got {self.max_retries}")
        if self.initial_delay <= 0:
            raise ValueError(f"initial_delay must be positive, got {self.initial_delay}")
        if self.max_delay <= 0:
            raise ValueError(f"max_delay must be positive, got {self.max_delay}")
        if self.max_delay < self.initial_delay:
            raise ValueError(
                f"max_delay ({self.max_delay}) must be >= initial_delay ({self.initial_delay})"
            )
        if self.exponential_base <= 1.0:
            raise ValueError(f"exponential_base must be > 1.0, got {self.exponential_base}")
        if not 0.0 <= self.jitter <= 1.0:
            raise ValueError(f"jitter must be between 0.0 and 1.0, got {self.jitter}")

    @property
    def max_attempts(self) -> int:
        return self.max_retries + 1

    def delay(self, attempt: int) -> float:
        """Delay before retry number `attempt` + 1 (attempt is 0-based)."""
        return calculate_backoff(attempt, self)


class RetryError(Exception):
    """
    Every attempt failed.

    Attributes:
        attempts: Attempts made, including the first
        last_error: Exception from the final attempt
    """

    def __init__(self, operation_name: str, attempts: int, last_error: BaseException) -> None:
        super().__init__(f"{operation_name} failed after {attempts} attempt(s): {last_error}")
        self.operation_name = operation_name
        self.attempts = attempts
        self.last_error = last_error


def calculate_backoff(attempt: int, config: RetryConfig) -> float:
    """
    Exponential delay capped at max_delay, spread by jitter.

    Example:
        >>> config = RetryConfig(initial_delay=2.0)
        >>> [calculate_backoff(n, config) for n in range(3)]
        [2.0, 4.0, 8.0]
    """
    delay = min(config.initial_delay * config.exponential_base**attempt, config.max_delay)
    spread = delay * config.jitter
    if spread:
        delay += random.uniform(-spread, spread)  # nosec B311 - not crypto
    return max(0.0, delay)


# =============================================================================
# Per-action policies
# =============================================================================


@runtime_checkable
class RetryPolicy(Protocol):
    """Decides, after a failed attempt, whether and when to try again."""

    @property
    def max_retries(self) -> int: ...

    def get_backoff(self, attempt: int) -> float: ...

    def should_retry(self, attempt: int, error: BaseException) -> bool: ...


class BackoffRetryPolicy:
    """
    Retry selected exception types on an exponential schedule.

    Args:
        config: Retry schedule (default: 2 retries, 2s then 4s)
        retry_on: Exception types worth another attempt; anything else
            fails immediately. ``(Exception,)`` retries everything.

    Example:
        >>> policy = BackoffRetryPolicy(RetryConfig(max_retries=2))
        >>> policy.should_retry(0, TransientActionError("c1", "lock timeout"))
        True
        >>> policy.should_retry(0, PermanentActionError("c1", "bad reference"))
        False
    """

    def __init__(
        self,
        config: RetryConfig | None = None,
        retry_on: ExceptionTypes = TRANSIENT_EXCEPTIONS,
    ) -> None:
        self._config = config or RetryConfig()
        self._retry_on = retry_on

    @property
    def config(self) -> RetryConfig:
        return self._config

    @property
    def max_retries(self) -> int:
        return self._config.max_retries

    def get_backoff(self, attempt: int) -> float:
        return self._config.delay(attempt)

    def should_retry(self, attempt: int, error: BaseException) -> bool:
        return attempt < self._config.max_retries and isinstance(error, self._retry_on)

    def __repr__(self) -> str:
        names = ", ".join(e.__name__ for e in self._retry_on)
        return f"BackoffRetryPolicy(max_retries={self.max_retries}, retry_on=({names}))"


class NoRetryPolicy:
    """Every failure is final."""

    @property
    def max_retries(self) -> int:
        return 0

    def get_backoff(self, attempt: int) -> float:
        return 0.0

    def should_retry(self, attempt: int, error: BaseException) -> bool:
        return False

    def __repr__(self) -> str:
        return "NoRetryPolicy()"


# =============================================================================
# Whole-operation retry
# =============================================================================


async def retry_async(
    operation: Callable[[], Awaitable[T]],
    config: RetryConfig | None = None,
    retryable_exceptions: ExceptionTypes = TRANSIENT_EXCEPTIONS,
    operation_name: str = "operation",
) -> T:
    """
    Await `operation` until it succeeds or the schedule runs out.

    Args:
        operation: Zero-argument coroutine function, called once per attempt
        config: Retry schedule (default RetryConfig())
        retryable_exceptions: Failures worth another attempt
        operation_name: Used in log messages and the RetryError

    Raises:
        RetryError: If every attempt failed with a retryable exception
        Exception: A non-retryable exception, on the attempt it occurred
    """
    config = config or RetryConfig()
    attempt = 0

    while True:
        try:
            result = await operation()
        except retryable_exceptions as e:
            if attempt >= config.max_retries:
                logger.error("%s failed after %d attempt(s): %s", operation_name, attempt + 1, e)
                raise RetryError(operation_name, attempt + 1, e) from e
            delay = config.delay(attempt)
            logger.warning(
                "%s failed (attempt %d/%d), retrying in %.1fs: %s",
                operation_name,
                attempt + 1,
                config.max_attempts,
                delay,
                e,
            )
            await asyncio.sleep(delay)
            attempt += 1
            continue

        if attempt:
            logger.info("%s succeeded on attempt %d", operation_name, attempt + 1)
        return result


__all__ = [
    "TRANSIENT_EXCEPTIONS",
    "RetryConfig",
    "RetryError",
    "RetryPolicy",
    "BackoffRetryPolicy",
    "NoRetryPolicy",
    "calculate_backoff",
    "retry_async",
]
