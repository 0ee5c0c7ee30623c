"""
Unit tests for the per-provider circuit breaker.
"""

import pytest

from conftest import MonotonicClock

from mailsync.providers.base import ProviderHTTPError
from mailsync.services.circuit_breaker import CircuitBreaker, CircuitBreakerConfig, CircuitState


@pytest.fixture
def monotonic():
    return MonotonicClock()


@pytest.fixture
def breaker(monotonic):
    return CircuitBreaker(CircuitBreakerConfig(), clock=monotonic)


class TestTripping:
    """Tests for closed -> open transitions."""

    def test_starts_closed(self, breaker):
        assert breaker.get_state("gmail") == CircuitState.CLOSED
        assert breaker.can_execute("gmail") is True

    def test_three_failures_in_window(self, breaker, monotonic):
        breaker.record_failure("gmail")
        monotonic.advance(10)
        breaker.record_failure("gmail")
        assert breaker.get_state("gmail") == CircuitState.CLOSED
        monotonic.advance(10)
        breaker.record_failure("gmail")
        assert breaker.get_state("gmail") == CircuitState.OPEN
        assert breaker.can_execute("gmail") is False

    def test_failures_outside_window_do_not_count(self, monotonic):
        breaker = CircuitBreaker(
            CircuitBreakerConfig(failure_threshold=3, consecutive_failure_threshold=10),
            clock=monotonic,
        )
        for _ in range(4):
            breaker.record_failure("gmail")
            monotonic.advance(31)
        assert breaker.get_state("gmail") == CircuitState.CLOSED

    def test_consecutive_failures(self, monotonic):
        breaker = CircuitBreaker(
            CircuitBreakerConfig(failure_threshold=100, consecutive_failure_threshold=5),
            clock=monotonic,
        )
        for _ in range(4):
            breaker.record_failure("outlook")
            monotonic.advance(61)
        assert breaker.get_state("outlook") == CircuitState.CLOSED
        breaker.record_failure("outlook")
        assert breaker.get_state("outlook") == CircuitState.OPEN

    def test_success_resets_counters(self, breaker):
        breaker.record_failure("gmail")
        breaker.record_failure("gmail")
        breaker.record_success("gmail")
        breaker.record_failure("gmail")
        assert breaker.get_state("gmail") == CircuitState.CLOSED
        assert breaker.get_status("gmail").consecutive_failures == 1

    def test_providers_are_independent(self, breaker):
        for _ in range(3):
            breaker.record_failure("gmail")
        assert breaker.can_execute("outlook") is True

    def test_permanent_errors_do_not_count(self, breaker):
        assert breaker.record_error("gmail", ProviderHTTPError("gone", 404)) is False
        assert breaker.record_error("gmail", ProviderHTTPError("down", 503)) is True
        assert breaker.get_status("gmail").failure_count == 1


class TestRecovery:
    """Tests for cool-down and half-open probing."""

    def _open(self, breaker):
        for _ in range(3):
            breaker.record_failure("gmail")

    def test_cooldown_remaining(self, breaker, monotonic):
        self._open(breaker)
        monotonic.advance(20)
        assert breaker.get_cooldown_remaining("gmail") == pytest.approx(40)

    def test_half_open_after_cooldown(self, breaker, monotonic):
        self._open(breaker)
        monotonic.advance(60)
        assert breaker.get_state("gmail") == CircuitState.HALF_OPEN
        assert breaker.get_cooldown_remaining("gmail") == 0

    def test_single_probe(self, breaker, monotonic):
        """Only one caller gets through while half-open."""
        self._open(breaker)
        monotonic.advance(60)
        assert breaker.can_execute("gmail") is True
        assert breaker.can_execute("gmail") is False

    def test_probe_success_closes(self, breaker, monotonic):
        self._open(breaker)
        monotonic.advance(60)
        breaker.can_execute("gmail")
        breaker.record_success("gmail")
        assert breaker.get_state("gmail") == CircuitState.CLOSED
        assert breaker.get_status("gmail").failure_count == 0

    def test_probe_failure_reopens(self, breaker, monotonic):
        self._open(breaker)
        monotonic.advance(60)
        breaker.can_execute("gmail")
        breaker.record_failure("gmail")
        assert breaker.get_state("gmail") == CircuitState.OPEN
        assert breaker.get_cooldown_remaining("gmail") == pytest.approx(60)

    def test_released_probe_allows_another_trial(self, breaker, monotonic):
        self._open(breaker)
        monotonic.advance(60)
        assert breaker.can_execute("gmail") is True
        breaker.release_probe("gmail")
        assert breaker.get_state("gmail") == CircuitState.HALF_OPEN
        assert breaker.can_execute("gmail") is True
        assert breaker.can_execute("gmail") is False

    def test_release_probe_outside_half_open(self, breaker):
        breaker.release_probe("gmail")
        assert breaker.get_state("gmail") == CircuitState.CLOSED
        assert breaker.can_execute("gmail") is True

    def test_force_probe_and_reset(self, breaker):
        self._open(breaker)
        breaker.force_probe("gmail")
        assert breaker.get_state("gmail") == CircuitState.HALF_OPEN
        breaker.reset("gmail")
        assert breaker.get_state("gmail") == CircuitState.CLOSED

    def test_state_change_events(self, breaker, monotonic):
        changes = []
        breaker.events.subscribe(lambda change: changes.append((change.previous, change.current)))
        self._open(breaker)
        monotonic.advance(60)
        breaker.get_state("gmail")
        assert changes == [
            (CircuitState.CLOSED, CircuitState.OPEN),
            (CircuitState.OPEN, CircuitState.HALF_OPEN),
        ]

    def test_status_snapshot(self, breaker):
        self._open(breaker)
        status = breaker.get_all_status()["gmail"].to_dict()
        assert status["provider"] == "gmail"
        assert status["state"] == "open"
        assert status["cooldown_remaining"] == 60

    def test_reset_all(self, breaker):
        self._open(breaker)
        for _ in range(3):
            breaker.record_failure("outlook")
        breaker.reset_all()
        assert all(s.state == CircuitState.CLOSED for s in breaker.get_all_status().values())
