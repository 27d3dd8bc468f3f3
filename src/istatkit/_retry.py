"""
Retry utilities with capped exponential backoff.

Inspired by Tenacity's Retrying class, this module provides an iterator of
context managers for implementing retry logic. The waiting policy follows the
ISTAT service rules: honour the server's Retry-After header when present,
otherwise wait ``min(initial_backoff * multiplier^(attempt-1), max_backoff)``
seconds with random jitter.

Example:
    >>> from istatkit._retry import Retrying
    >>> for attempt in Retrying(max_attempts=3, initial_backoff=60.0):
    ...     with attempt:
    ...         limiter.throttle()
    ...         return http_client.get(url)
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable, Generator
from dataclasses import dataclass
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from istatkit._rate_limit import Jitter

logger = logging.getLogger(__name__)


class RetryableError(Exception):
    """
    Base class for exceptions that should trigger automatic retry.

    Exceptions extending this class are retried by the Retrying loop. Everything
    else propagates immediately.

    Subclasses may expose a ``retry_after`` attribute (seconds, or None) to
    override the computed backoff with the delay requested by the server.

    Example:
        >>> class MyTransientError(RetryableError):
        ...     '''Custom retryable error.'''
        >>>
        >>> for attempt in Retrying(max_attempts=3):
        ...     with attempt:
        ...         if some_condition:
        ...             raise MyTransientError("Temporary failure")
        ...         break  # Success
    """

    pass


class MaxRetriesExceededError(Exception):
    """
    Raised when all retry attempts are exhausted.

    Attributes:
        message: Human-readable error message.
        last_exception: The original exception from the last attempt.
        attempts: How many attempts were made.
    """

    def __init__(self, message: str, last_exception: Exception | None = None, attempts: int = 0):
        super().__init__(message)
        self.last_exception = last_exception
        self.attempts = attempts


@dataclass(frozen=True)
class RetryAttempt:
    """
    Represents a single attempt within a retry loop.

    Attributes:
        attempt_number: One-based index of the current attempt (1 = first attempt).
        max_attempts: Total number of attempts allowed.
    """

    attempt_number: int
    max_attempts: int

    @property
    def is_last_attempt(self) -> bool:
        """Return True if this is the last allowed attempt."""
        return self.attempt_number >= self.max_attempts


class Retrying:
    """
    Iterator of retry contexts with capped exponential backoff.

    Usage:
        >>> for attempt in Retrying(max_attempts=3, sleep=limiter.sleep):
        ...     with attempt:
        ...         response = client.get(url)
        ...         break

    Args:
        max_attempts: Total number of attempts, including the first one (default: 3).
        initial_backoff: Wait before the second attempt, in seconds (default: 60).
        backoff_multiplier: Growth factor between consecutive waits (default: 2).
        max_backoff: Upper bound for any single wait, in seconds (default: 300).
        jitter: Jitter applied to computed waits. None disables jitter.
        sleep: Function used to wait. Tests inject a fake to avoid real delays.
        min_wait: Lower bound for computed (non Retry-After) waits (default: 1s).
        logger_prefix: Prefix added to log messages (e.g. the dataset id).
    """

    def __init__(
        self,
        max_attempts: int = 3,
        initial_backoff: float = 60.0,
        backoff_multiplier: float = 2.0,
        max_backoff: float = 300.0,
        jitter: Jitter | None = None,
        sleep: Callable[[float], None] = time.sleep,
        min_wait: float = 1.0,
        logger_prefix: str = "",
    ):
        assert max_attempts is not None, "max_attempts cannot be None"
        assert max_attempts >= 1, "max_attempts must be >= 1"
        assert initial_backoff >= 0, "initial_backoff must be >= 0"
        assert backoff_multiplier >= 1, "backoff_multiplier must be >= 1"
        assert max_backoff >= initial_backoff, "max_backoff must be >= initial_backoff"
        assert sleep is not None, "sleep cannot be None"

        self.max_attempts = max_attempts
        self.initial_backoff = initial_backoff
        self.backoff_multiplier = backoff_multiplier
        self.max_backoff = max_backoff
        self.jitter = jitter
        self.sleep = sleep
        self.min_wait = min_wait
        self.logger_prefix = logger_prefix

        self._current_attempt = 0
        self._last_exception: Exception | None = None

    @property
    def attempts_made(self) -> int:
        """Number of attempts started so far."""
        return self._current_attempt

    def __iter__(self) -> Generator[_RetryContext, None, None]:
        """Yield retry contexts for each attempt."""
        for attempt in range(1, self.max_attempts + 1):
            self._current_attempt = attempt
            yield _RetryContext(self, attempt)

    def _should_retry(self, exception: Exception) -> bool:
        """Only RetryableError subclasses are retried."""
        return isinstance(exception, RetryableError)

    def _prefix(self) -> str:
        return f"{self.logger_prefix} | " if self.logger_prefix else ""

    def _handle_retry(self, exception: Exception) -> None:
        """Log the failed attempt and wait before the next one."""
        self._last_exception = exception
        wait_time = self.calculate_wait_time(self._current_attempt, exception)

        logger.warning(
            f"{self._prefix()}Attempt {self._current_attempt}/{self.max_attempts} failed: {exception}"
        )
        logger.warning(f"{self._prefix()}Retrying in {wait_time:.1f}s...")
        self.sleep(wait_time)

    def calculate_wait_time(self, attempt: int, exception: Exception | None = None) -> float:
        """
        Calculate the wait time after a failed attempt.

        A Retry-After value carried by the exception wins over the computed
        backoff, capped at max_backoff.

        Args:
            attempt: One-based number of the attempt that just failed.
            exception: The exception raised by that attempt.

        Returns:
            The wait time in seconds.

        Example:
            >>> r = Retrying(initial_backoff=60, backoff_multiplier=2, max_backoff=300)
            >>> [r.calculate_wait_time(n) for n in (1, 2, 3, 4)]
            [60.0, 120.0, 240.0, 300.0]
        """
        retry_after = getattr(exception, "retry_after", None)
        if retry_after is not None:
            if retry_after > self.max_backoff:
                logger.warning(
                    f"{self._prefix()}Retry-After header ({retry_after}s) exceeds max_backoff "
                    f"({self.max_backoff}s). Waiting {self.max_backoff}s instead."
                )
                return float(self.max_backoff)
            return float(retry_after)

        base_wait = min(
            self.initial_backoff * (self.backoff_multiplier ** (attempt - 1)),
            self.max_backoff,
        )
        if self.jitter is not None:
            base_wait = self.jitter.apply(base_wait)
        return max(self.min_wait, base_wait)

    def _handle_exhausted(self, exception: Exception) -> None:
        """
        Handle when all attempts are exhausted.

        Raises:
            MaxRetriesExceededError: Always raised with the last exception.
        """
        self._last_exception = exception
        logger.error(
            f"{self._prefix()}Max attempts ({self.max_attempts}) exceeded. Last error: {exception}"
        )
        raise MaxRetriesExceededError(
            message=f"Max retries exceeded after {self.max_attempts} attempts. Last error: {exception}",
            last_exception=exception,
            attempts=self.max_attempts,
        ) from exception


class _RetryContext:
    """
    Context for a single attempt (internal).

    On success (no exception): exits normally, caller should break/return.
    On retryable exception: waits, suppresses the exception, loop continues.
    On non-retryable exception: re-raises, loop exits.
    On exhausted attempts: raises MaxRetriesExceededError.
    """

    def __init__(self, retrying: Retrying, attempt: int):
        self._retrying = retrying
        self.attempt_number = attempt

    @property
    def max_attempts(self) -> int:
        return self._retrying.max_attempts

    def __enter__(self) -> RetryAttempt:
        return RetryAttempt(
            attempt_number=self.attempt_number,
            max_attempts=self._retrying.max_attempts,
        )

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: object,
    ) -> bool:
        if exc_val is None:
            return False

        # Only handle Exception, not BaseException (KeyboardInterrupt, etc.)
        if not isinstance(exc_val, Exception):
            return False

        if not self._retrying._should_retry(exc_val):
            return False

        # Single-attempt loops let the original exception propagate unwrapped
        if self._retrying.max_attempts == 1:
            return False

        if self.attempt_number >= self._retrying.max_attempts:
            self._retrying._handle_exhausted(exc_val)
            return False  # Never reached

        self._retrying._handle_retry(exc_val)
        return True
