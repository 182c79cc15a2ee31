"""Tests for per-source circuit breakers."""

import pytest

from missionspine.core.errors import CircuitOpenError
from missionspine.execution.circuit_breaker import (
    CircuitBreakerCallbacks,
    CircuitBreakerConfig,
    CircuitBreakerRegistry,
    CircuitState,
)

CONFIG = CircuitBreakerConfig(failure_threshold=3, reset_timeout=30.0, success_threshold=2, failure_window=60.0)


@pytest.fixture
def events():
    return []


@pytest.fixture
def registry(clock, events):
    callbacks = CircuitBreakerCallbacks(
        on_open=lambda e: events.append(("open", e)),
        on_half_open=lambda e: events.append(("half_open", e)),
        on_close=lambda e: events.append(("close", e)),
        on_rejected=lambda e: events.append(("rejected", e)),
    )
    return CircuitBreakerRegistry(CONFIG, callbacks=callbacks, clock=clock)


class TestStateMachine:
    def test_opens_at_threshold(self, registry, events):
        """Reaching failure_threshold opens the circuit."""
        for _ in range(2):
            registry.record_failure("api", status_code=500)
        assert registry.get_state("api") == CircuitState.CLOSED

        registry.record_failure("api", status_code=503)
        assert registry.get_state("api") == CircuitState.OPEN
        kind, event = events[-1]
        assert kind == "open"
        assert event.source == "api"
        assert event.failures == 3
        assert "3 failures" in event.reason

    def test_open_circuit_rejects(self, registry, clock, events):
        """While open, ensure_can_proceed raises with the time to next attempt."""
        for _ in range(3):
            registry.record_failure("api", status_code=500)
        clock.advance(10)

        with pytest.raises(CircuitOpenError) as exc_info:
            registry.ensure_can_proceed("api")
        assert exc_info.value.next_attempt_in == pytest.approx(20.0)
        assert events[-1][0] == "rejected"
        assert events[-1][1].next_attempt_in == pytest.approx(20.0)

    def test_half_open_after_reset_timeout(self, registry, clock):
        """After reset_timeout one trial call is allowed."""
        for _ in range(3):
            registry.record_failure("api", status_code=500)
        clock.advance(30)

        registry.ensure_can_proceed("api")
        assert registry.get_state("api") == CircuitState.HALF_OPEN

    def test_half_open_closes_after_successes(self, registry, clock, events):
        """success_threshold successes in half-open close the circuit."""
        for _ in range(3):
            registry.record_failure("api", status_code=500)
        clock.advance(31)

        registry.record_success("api")
        assert registry.get_state("api") == CircuitState.HALF_OPEN
        registry.record_success("api")
        assert registry.get_state("api") == CircuitState.CLOSED
        assert [kind for kind, _ in events] == ["open", "half_open", "close"]

    def test_half_open_failure_reopens(self, registry, clock):
        """Any failure in half-open reopens the circuit."""
        for _ in range(3):
            registry.record_failure("api", status_code=500)
        clock.advance(31)
        assert registry.get_state("api") == CircuitState.HALF_OPEN

        registry.record_failure("api", is_network_error=True)
        assert registry.get_state("api") == CircuitState.OPEN
        assert not registry.can_proceed("api")

    def test_failures_outside_window_expire(self, registry, clock):
        """Failures older than failure_window do not count."""
        registry.record_failure("api", status_code=500)
        registry.record_failure("api", status_code=500)
        clock.advance(61)
        registry.record_failure("api", status_code=500)
        assert registry.get_state("api") == CircuitState.CLOSED
        assert registry.get_status("api").failures == 1

    def test_client_errors_are_not_failures(self, registry):
        """4xx statuses outside the configured set are ignored."""
        for _ in range(5):
            registry.record_failure("api", status_code=404)
        assert registry.get_state("api") == CircuitState.CLOSED


class TestRegistry:
    def test_sources_are_independent(self, registry):
        """One source's failures never open another source's circuit."""
        for _ in range(3):
            registry.record_failure("api", status_code=500)
        assert registry.get_state("api") == CircuitState.OPEN
        assert registry.get_state("other") == CircuitState.CLOSED

    def test_per_source_config(self, registry):
        """configure() applies to that source only."""
        registry.configure("fragile", CircuitBreakerConfig(failure_threshold=1))
        registry.record_failure("fragile", status_code=500)
        registry.record_failure("api", status_code=500)
        assert registry.get_state("fragile") == CircuitState.OPEN
        assert registry.get_state("api") == CircuitState.CLOSED

    def test_reset_all(self, registry):
        """reset() with no source drops every breaker."""
        for _ in range(3):
            registry.record_failure("api", status_code=500)
        registry.reset()
        assert registry.get_state("api") == CircuitState.CLOSED
        assert registry.get_all_statuses()["api"].failures == 0

    def test_reset_one(self, registry):
        """reset(source) closes that breaker."""
        for _ in range(3):
            registry.record_failure("api", status_code=500)
        registry.reset("api")
        assert registry.can_proceed("api")
