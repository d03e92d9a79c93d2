"""
Retry scheduling for failed publishes.

Provides:
- calculate_backoff: exponential backoff with a cap and symmetric jitter
- default_error_classifier: decides whether a publish error is retryable
- RetryScheduler: turns a failure into a retry or dead-letter decision

A message that has had ``attempts`` retries scheduled and fails again is
rescheduled with ``attempts + 1`` while ``attempts < max_attempts``; once
``attempts`` reaches ``max_attempts`` the next failure dead-letters it.
With the defaults that is six publish attempts, retried after roughly
1, 2, 4, 8 and 16 seconds.
"""

import asyncio
import logging
import random
from collections.abc import Callable
from dataclasses import dataclass
from datetime import timedelta

from eventrelay.config import RetryConfig
from eventrelay.exceptions import PermanentError, TransientPublishError

logger = logging.getLogger(__name__)

# Errors that are always worth another attempt
TRANSIENT_EXCEPTIONS: tuple[type[Exception], ...] = (
    TransientPublishError,
    ConnectionError,
    TimeoutError,
    asyncio.TimeoutError,
    OSError,  # Includes network errors
)

ErrorClassifier = Callable[[BaseException], bool]
"""Returns True when an error is retryable, False when it is permanent."""


def default_error_classifier(error: BaseException) -> bool:
    """
    Classify a publish error.

    ``PermanentError`` and its subclasses (unknown message type, payload
    deserialization or schema failures) are permanent. Transient errors
    and anything unrecognised are retryable, leaving the retry budget to
    decide when to give up.
    """
    if isinstance(error, PermanentError):
        return False
    return True


def strict_error_classifier(error: BaseException) -> bool:
    """Retry only the errors in ``TRANSIENT_EXCEPTIONS``; everything else is permanent."""
    return isinstance(error, TRANSIENT_EXCEPTIONS)


def calculate_backoff(
    attempt: int,
    config: RetryConfig,
    rng: Callable[[], float] = random.random,
) -> float:
    """
    Calculate the delay before retry number ``attempt`` (1-based).

    ``min(max_delay, initial_delay * exponential_base ** (attempt - 1))``
    multiplied by a factor drawn uniformly from
    ``[1 - jitter, 1 + jitter)``.

    Args:
        attempt: Retry number, starting at 1
        config: Retry configuration
        rng: Source of uniform numbers in [0, 1)

    Returns:
        Delay in seconds
    """
    exponent = max(attempt - 1, 0)
    base_delay = min(config.max_delay, config.initial_delay * (config.exponential_base**exponent))
    # Not used for security purposes
    factor = 1.0 - config.jitter + rng() * 2 * config.jitter  # nosec B311
    return base_delay * factor


@dataclass(frozen=True)
class RetryDecision:
    """
    Outcome of a failed publish.

    Attributes:
        retry: True to reschedule, False to dead-letter
        attempts: Attempts value to store on the message
        delay: Seconds until the next attempt (None when dead-lettering)
        reason: Short explanation for logs
    """

    retry: bool
    attempts: int
    delay: float | None = None
    reason: str = ""

    @property
    def next_attempt_in(self) -> timedelta | None:
        return timedelta(seconds=self.delay) if self.delay is not None else None


class RetryScheduler:
    """
    Decides how a failed message continues.

    Example:
        >>> scheduler = RetryScheduler(RetryConfig(max_attempts=5))
        >>> decision = scheduler.decide(attempts=0, error=TimeoutError())
        >>> decision.retry, decision.attempts
        (True, 1)
    """

    def __init__(
        self,
        config: RetryConfig | None = None,
        classifier: ErrorClassifier | None = None,
        rng: Callable[[], float] | None = None,
    ) -> None:
        self._config = config or RetryConfig()
        self._classifier = classifier or default_error_classifier
        self._rng = rng or random.random

    @property
    def config(self) -> RetryConfig:
        return self._config

    def next_delay(self, attempt: int) -> float:
        """Delay in seconds before retry number ``attempt``."""
        return calculate_backoff(attempt, self._config, self._rng)

    def is_retryable(self, error: BaseException) -> bool:
        return self._classifier(error)

    def decide(self, attempts: int, error: BaseException) -> RetryDecision:
        """
        Decide between reschedule and dead-letter.

        Args:
            attempts: Retries already scheduled for the message
            error: The error raised by the failed attempt
        """
        if not self.is_retryable(error):
            return RetryDecision(retry=False, attempts=attempts, reason="permanent error")

        if attempts >= self._config.max_attempts:
            return RetryDecision(
                retry=False,
                attempts=self._config.max_attempts,
                reason=f"exhausted {self._config.max_attempts} retries",
            )

        next_attempt = attempts + 1
        return RetryDecision(
            retry=True,
            attempts=next_attempt,
            delay=self.next_delay(next_attempt),
            reason=f"retry {next_attempt}/{self._config.max_attempts}",
        )


__all__ = [
    "TRANSIENT_EXCEPTIONS",
    "ErrorClassifier",
    "RetryDecision",
    "RetryScheduler",
    "calculate_backoff",
    "default_error_classifier",
    "strict_error_classifier",
]
