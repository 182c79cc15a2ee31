"""Tests for retry backoff strategies."""

import pytest

from missionspine.execution.retry import (
    BackoffKind,
    ConstantBackoff,
    ExponentialBackoff,
    LinearBackoff,
    RetryConfig,
    backoff_for,
)


class TestBackoffFor:
    def test_none_gives_default_exponential(self):
        """No config means exponential backoff with three attempts."""
        strategy = backoff_for(None)
        assert isinstance(strategy, ExponentialBackoff)
        assert strategy.max_attempts == 3

    @pytest.mark.parametrize(
        "kind,cls",
        [
            (BackoffKind.EXPONENTIAL, ExponentialBackoff),
            (BackoffKind.LINEAR, LinearBackoff),
            (BackoffKind.CONSTANT, ConstantBackoff),
        ],
    )
    def test_kind_selects_strategy(self, kind, cls):
        """Each backoff kind maps to its strategy."""
        strategy = backoff_for(RetryConfig(max_attempts=5, backoff=kind))
        assert isinstance(strategy, cls)
        assert strategy.max_attempts == 5


class TestDelays:
    def test_exponential_doubles_and_caps(self):
        """Exponential base delays double up to max_delay."""
        strategy = ExponentialBackoff(initial_delay=1.0, max_delay=5.0)
        assert [strategy.base_delay(n) for n in range(1, 5)] == [1.0, 2.0, 4.0, 5.0]

    def test_exponential_jitter_bounds(self):
        """Jitter stays within ±10% of the base delay."""
        strategy = ExponentialBackoff(initial_delay=2.0)
        for _ in range(50):
            assert 1.8 <= strategy.next_delay(1) <= 2.2

    def test_linear(self):
        """Linear delays grow by initial_delay."""
        strategy = LinearBackoff(initial_delay=0.5, max_delay=1.2)
        assert [strategy.next_delay(n) for n in (1, 2, 3)] == [0.5, 1.0, 1.2]

    def test_constant(self):
        """Constant delay never changes."""
        strategy = ConstantBackoff(initial_delay=0.25)
        assert {strategy.next_delay(n) for n in range(1, 6)} == {0.25}

    def test_should_retry_counts_first_attempt(self):
        """max_attempts=3 allows retries after attempts 1 and 2 only."""
        strategy = backoff_for(RetryConfig(max_attempts=3))
        assert strategy.should_retry(1)
        assert strategy.should_retry(2)
        assert not strategy.should_retry(3)


class TestRetryConfig:
    def test_dict_round_trip(self):
        """RetryConfig survives to_dict/from_dict."""
        config = RetryConfig(max_attempts=4, backoff=BackoffKind.LINEAR, initial_delay=0.1, max_delay=2)
        assert RetryConfig.from_dict(config.to_dict()) == config
