"""
Per-provider circuit breaker.

closed    -> every attempt allowed
open      -> attempts short-circuited until the cool-down elapses
half-open -> exactly one probe allowed; success closes, failure reopens

The breaker trips on `consecutive_failure_threshold` consecutive failures
or on `failure_threshold` failures inside `failure_window` seconds. Only
transient/unknown failures count. Cool-down expiry is evaluated lazily
whenever the state is read, so no timers are involved.
"""

import logging
import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Dict, List, Optional

from mailsync.core.events import EventChannel
from mailsync.services.error_classification import ErrorType, classify_error

logger = logging.getLogger(__name__)


class CircuitState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half-open"


@dataclass
class CircuitBreakerConfig:
    failure_threshold: int = 3
    failure_window: float = 60.0  # seconds
    consecutive_failure_threshold: int = 5
    cooldown: float = 60.0  # seconds


@dataclass
class ProviderCircuit:
    """Mutable breaker state for one provider."""
    state: CircuitState = CircuitState.CLOSED
    failure_timestamps: List[float] = field(default_factory=list)
    consecutive_failures: int = 0
    last_failure_time: Optional[float] = None
    last_state_change: float = 0.0
    probe_in_flight: bool = False


@dataclass
class CircuitStatus:
    """Read-only snapshot for status reporting."""
    provider: str
    state: CircuitState
    cooldown_remaining: float
    failure_count: int
    consecutive_failures: int
    last_failure_time: Optional[float]

    def to_dict(self) -> dict:
        return {
            "provider": self.provider,
            "state": self.state.value,
            "cooldown_remaining": round(self.cooldown_remaining, 2),
            "failure_count": self.failure_count,
            "consecutive_failures": self.consecutive_failures,
            "last_failure_time": self.last_failure_time,
        }


@dataclass
class CircuitStateChange:
    provider: str
    previous: CircuitState
    current: CircuitState


class CircuitBreaker:
    """
    Circuit breaker shared by all accounts of each provider.

    All updates happen under one lock so concurrent attempts from several
    accounts see a consistent state.
    """

    def __init__(
        self,
        config: Optional[CircuitBreakerConfig] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.config = config or CircuitBreakerConfig()
        self._clock = clock
        self._circuits: Dict[str, ProviderCircuit] = {}
        self._lock = threading.RLock()
        self.events: EventChannel[CircuitStateChange] = EventChannel("circuit-breaker")

    def _circuit(self, provider: str) -> ProviderCircuit:
        circuit = self._circuits.get(provider)
        if circuit is None:
            circuit = ProviderCircuit(last_state_change=self._clock())
            self._circuits[provider] = circuit
        return circuit

    def _transition(self, provider: str, circuit: ProviderCircuit, new_state: CircuitState):
        previous = circuit.state
        if previous == new_state:
            return
        circuit.state = new_state
        circuit.last_state_change = self._clock()
        circuit.probe_in_flight = False
        if new_state in (CircuitState.OPEN, CircuitState.CLOSED):
            circuit.failure_timestamps.clear()
            circuit.consecutive_failures = 0

        if new_state == CircuitState.OPEN:
            logger.warning(
                f"Circuit for {provider} opened; pausing sync for {self.config.cooldown:.0f}s"
            )
        else:
            logger.info(f"Circuit for {provider}: {previous.value} -> {new_state.value}")
        self.events.publish(CircuitStateChange(provider, previous, new_state))

    def _refresh(self, provider: str, circuit: ProviderCircuit):
        """Move open -> half-open once the cool-down has elapsed."""
        if circuit.state == CircuitState.OPEN:
            if self._clock() - circuit.last_state_change >= self.config.cooldown:
                self._transition(provider, circuit, CircuitState.HALF_OPEN)

    def get_state(self, provider: str) -> CircuitState:
        with self._lock:
            circuit = self._circuit(provider)
            self._refresh(provider, circuit)
            return circuit.state

    def can_execute(self, provider: str) -> bool:
        """
        Whether an attempt against the provider may proceed.

        In half-open state the first caller gets the probe slot; everyone
        else is refused until the probe reports back.
        """
        with self._lock:
            circuit = self._circuit(provider)
            self._refresh(provider, circuit)
            if circuit.state == CircuitState.CLOSED:
                return True
            if circuit.state == CircuitState.OPEN:
                return False
            if circuit.probe_in_flight:
                return False
            circuit.probe_in_flight = True
            return True

    def record_success(self, provider: str):
        with self._lock:
            circuit = self._circuit(provider)
            if circuit.state == CircuitState.HALF_OPEN:
                self._transition(provider, circuit, CircuitState.CLOSED)
            elif circuit.state == CircuitState.CLOSED:
                circuit.consecutive_failures = 0
                circuit.failure_timestamps.clear()

    def record_failure(self, provider: str):
        """Count a transient/unknown failure against the provider."""
        with self._lock:
            circuit = self._circuit(provider)
            self._refresh(provider, circuit)
            now = self._clock()
            circuit.last_failure_time = now

            if circuit.state == CircuitState.HALF_OPEN:
                self._transition(provider, circuit, CircuitState.OPEN)
                return
            if circuit.state == CircuitState.OPEN:
                return

            circuit.consecutive_failures += 1
            window_start = now - self.config.failure_window
            circuit.failure_timestamps = [t for t in circuit.failure_timestamps if t > window_start]
            circuit.failure_timestamps.append(now)

            if (
                circuit.consecutive_failures >= self.config.consecutive_failure_threshold
                or len(circuit.failure_timestamps) >= self.config.failure_threshold
            ):
                self._transition(provider, circuit, CircuitState.OPEN)

    def release_probe(self, provider: str):
        """Free the half-open probe slot when the trial ended without a verdict."""
        with self._lock:
            circuit = self._circuit(provider)
            if circuit.state == CircuitState.HALF_OPEN and circuit.probe_in_flight:
                logger.debug(f"Probe for {provider} ended without a verdict, slot released")
                circuit.probe_in_flight = False

    def record_error(self, provider: str, error: BaseException) -> bool:
        """
        Classify an error and count it if it indicates provider trouble.

        Returns:
            True if the error was counted
        """
        classification = classify_error(error)
        if classification.type == ErrorType.PERMANENT:
            return False
        self.record_failure(provider)
        return True

    def get_cooldown_remaining(self, provider: str) -> float:
        with self._lock:
            circuit = self._circuit(provider)
            self._refresh(provider, circuit)
            if circuit.state != CircuitState.OPEN:
                return 0.0
            elapsed = self._clock() - circuit.last_state_change
            return max(0.0, self.config.cooldown - elapsed)

    def force_probe(self, provider: str):
        """Skip the rest of the cool-down and allow a probe now."""
        with self._lock:
            circuit = self._circuit(provider)
            if circuit.state == CircuitState.OPEN:
                self._transition(provider, circuit, CircuitState.HALF_OPEN)

    def reset(self, provider: str):
        with self._lock:
            circuit = self._circuit(provider)
            self._transition(provider, circuit, CircuitState.CLOSED)
            circuit.failure_timestamps.clear()
            circuit.consecutive_failures = 0
            circuit.last_failure_time = None

    def reset_all(self):
        with self._lock:
            for provider in list(self._circuits):
                self.reset(provider)

    def get_status(self, provider: str) -> CircuitStatus:
        with self._lock:
            circuit = self._circuit(provider)
            self._refresh(provider, circuit)
            return CircuitStatus(
                provider=provider,
                state=circuit.state,
                cooldown_remaining=self.get_cooldown_remaining(provider),
                failure_count=len(circuit.failure_timestamps),
                consecutive_failures=circuit.consecutive_failures,
                last_failure_time=circuit.last_failure_time,
            )

    def get_all_status(self) -> Dict[str, CircuitStatus]:
        with self._lock:
            return {p: self.get_status(p) for p in list(self._circuits)}
