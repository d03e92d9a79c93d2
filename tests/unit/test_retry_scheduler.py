"""
Unit tests for backoff calculation and retry decisions.
"""

import asyncio

import pytest

from eventrelay.config import RetryConfig
from eventrelay.exceptions import (
    DeserializationError,
    SchemaViolationError,
    TransientPublishError,
    UnknownMessageTypeError,
)
from eventrelay.outbox.retry import (
    RetryScheduler,
    calculate_backoff,
    default_error_classifier,
    strict_error_classifier,
)


def neutral() -> float:
    """Random source that makes the jitter factor exactly 1."""
    return 0.5


class TestCalculateBackoff:
    """Tests for calculate_backoff."""

    def test_exponential_sequence(self):
        config = RetryConfig(initial_delay=1.0, exponential_base=2.0)
        delays = [calculate_backoff(n, config, neutral) for n in range(1, 6)]
        assert delays == [1.0, 2.0, 4.0, 8.0, 16.0]

    def test_capped_at_max_delay(self):
        config = RetryConfig(initial_delay=1.0, max_delay=10.0, jitter=0.0)
        assert calculate_backoff(20, config, neutral) == 10.0

    def test_jitter_bounds(self):
        config = RetryConfig(initial_delay=4.0, jitter=0.25)
        low = calculate_backoff(1, config, lambda: 0.0)
        high = calculate_backoff(1, config, lambda: 0.999999)
        assert low == pytest.approx(3.0)
        assert 4.0 < high < 5.0

    def test_monotonic_without_jitter(self):
        config = RetryConfig(initial_delay=0.5, max_delay=60.0, jitter=0.0)
        delays = [calculate_backoff(n, config) for n in range(1, 12)]
        assert delays == sorted(delays)
        assert delays[-1] == 60.0

    def test_jittered_delays_stay_within_band(self):
        config = RetryConfig(initial_delay=1.0, max_delay=300.0, jitter=0.25)
        for attempt in range(1, 10):
            base = min(300.0, 2.0 ** (attempt - 1))
            delay = calculate_backoff(attempt, config)
            assert base * 0.75 <= delay <= base * 1.25


class TestErrorClassifiers:
    """Tests for the retryable-error predicates."""

    @pytest.mark.parametrize(
        "error",
        [
            UnknownMessageTypeError("Nope", []),
            DeserializationError("OrderPlaced", "bad json"),
            SchemaViolationError("OrderPlaced", "missing field"),
        ],
    )
    def test_permanent_errors_are_not_retryable(self, error):
        assert default_error_classifier(error) is False
        assert strict_error_classifier(error) is False

    @pytest.mark.parametrize(
        "error",
        [
            TransientPublishError("broker busy"),
            ConnectionError("reset"),
            TimeoutError(),
            asyncio.TimeoutError(),
            OSError("unreachable"),
        ],
    )
    def test_transient_errors_are_retryable(self, error):
        assert default_error_classifier(error) is True
        assert strict_error_classifier(error) is True

    def test_unknown_errors(self):
        """Unrecognised errors are retried by default but not by the strict classifier."""
        error = RuntimeError("surprise")
        assert default_error_classifier(error) is True
        assert strict_error_classifier(error) is False


class TestRetryScheduler:
    """Tests for RetryScheduler.decide."""

    @pytest.fixture
    def scheduler(self) -> RetryScheduler:
        return RetryScheduler(RetryConfig(max_attempts=5), rng=neutral)

    def test_first_failure_schedules_retry(self, scheduler):
        decision = scheduler.decide(0, TransientPublishError("busy"))
        assert decision.retry is True
        assert decision.attempts == 1
        assert decision.delay == 1.0
        assert decision.next_attempt_in.total_seconds() == 1.0

    def test_retries_until_budget_is_spent(self, scheduler):
        delays = []
        attempts = 0
        for _ in range(5):
            decision = scheduler.decide(attempts, TransientPublishError("busy"))
            assert decision.retry
            attempts = decision.attempts
            delays.append(decision.delay)

        assert delays == [1.0, 2.0, 4.0, 8.0, 16.0]
        final = scheduler.decide(attempts, TransientPublishError("busy"))
        assert final.retry is False
        assert final.attempts == 5
        assert final.delay is None

    def test_permanent_error_dead_letters_immediately(self, scheduler):
        decision = scheduler.decide(2, SchemaViolationError("OrderPlaced", "bad"))
        assert decision.retry is False
        assert decision.attempts == 2
        assert "permanent" in decision.reason

    def test_zero_budget(self):
        scheduler = RetryScheduler(RetryConfig(max_attempts=0))
        decision = scheduler.decide(0, TimeoutError())
        assert decision.retry is False
        assert decision.attempts == 0

    def test_custom_classifier(self):
        scheduler = RetryScheduler(classifier=lambda e: isinstance(e, KeyError))
        assert scheduler.decide(0, KeyError("x")).retry is True
        assert scheduler.decide(0, TimeoutError()).retry is False

    def test_default_config(self):
        assert RetryScheduler().config == RetryConfig()
