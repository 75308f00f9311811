"""Per-dependency circuit breaker (the degradation policy)."""

from __future__ import annotations

import threading
from collections import deque
from dataclasses import dataclass
from enum import Enum

from message_search.config import CircuitConfig
from message_search.obs.logging import get_logger
from message_search.resilience.clock import Clock, SystemClock

logger = get_logger(__name__)


class CircuitState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half-open"


@dataclass(slots=True)
class CircuitSnapshot:
    dependency: str
    state: CircuitState
    failure_count: int
    last_transition_at: float
    total_successes: int
    total_failures: int
    last_latency_ms: float | None


class CircuitBreaker:
    """Decides whether calls to one external dependency may be attempted.

    Transitions:
    - closed -> open when ``failure_threshold`` failures land within
      ``window_seconds`` with no success in between.
    - open -> half-open once ``cooldown_seconds`` have elapsed.
    - half-open admits exactly one probe call; its success closes the
      circuit, its failure re-opens it and restarts the cool-down.

    All state lives behind one lock that is never held across a network
    call. Instances are constructed explicitly, one per dependency.
    """

    def __init__(
        self,
        dependency: str,
        config: CircuitConfig | None = None,
        *,
        clock: Clock | None = None,
    ) -> None:
        self.dependency = dependency
        self.config = config or CircuitConfig()
        self._clock = clock or SystemClock()
        self._lock = threading.Lock()
        self._state = CircuitState.CLOSED
        self._failures: deque[float] = deque()
        self._last_transition_at = self._clock.monotonic()
        self._probe_in_flight = False
        self._total_successes = 0
        self._total_failures = 0
        self._last_latency_ms: float | None = None

    @property
    def state(self) -> CircuitState:
        with self._lock:
            self._advance_locked()
            return self._state

    def allow_call(self) -> bool:
        with self._lock:
            self._advance_locked()
            if self._state is CircuitState.CLOSED:
                return True
            if self._state is CircuitState.OPEN:
                return False
            if self._probe_in_flight:
                return False
            self._probe_in_flight = True
            return True

    def record_success(self, *, latency_ms: float | None = None) -> None:
        with self._lock:
            self._total_successes += 1
            self._last_latency_ms = latency_ms
            self._failures.clear()
            if self._state is CircuitState.HALF_OPEN:
                self._probe_in_flight = False
                self._transition_locked(CircuitState.CLOSED)

    def record_failure(self, *, latency_ms: float | None = None, error: str | None = None) -> None:
        with self._lock:
            now = self._clock.monotonic()
            self._total_failures += 1
            self._last_latency_ms = latency_ms
            if self._state is CircuitState.HALF_OPEN:
                self._probe_in_flight = False
                self._transition_locked(CircuitState.OPEN, error=error)
                return
            if self._state is CircuitState.OPEN:
                return
            self._failures.append(now)
            self._prune_locked(now)
            if len(self._failures) >= self.config.failure_threshold:
                self._transition_locked(CircuitState.OPEN, error=error)

    def release(self) -> None:
        """Give back a half-open probe slot without reporting an outcome.

        Used when a call is abandoned by its own caller (cancellation or
        local deadline) before the dependency answered.
        """
        with self._lock:
            self._probe_in_flight = False

    def snapshot(self) -> CircuitSnapshot:
        with self._lock:
            self._advance_locked()
            self._prune_locked(self._clock.monotonic())
            return CircuitSnapshot(
                dependency=self.dependency,
                state=self._state,
                failure_count=len(self._failures),
                last_transition_at=self._last_transition_at,
                total_successes=self._total_successes,
                total_failures=self._total_failures,
                last_latency_ms=self._last_latency_ms,
            )

    def _advance_locked(self) -> None:
        if self._state is not CircuitState.OPEN:
            return
        elapsed = self._clock.monotonic() - self._last_transition_at
        if elapsed >= self.config.cooldown_seconds:
            self._probe_in_flight = False
            self._transition_locked(CircuitState.HALF_OPEN)

    def _prune_locked(self, now: float) -> None:
        horizon = now - self.config.window_seconds
        while self._failures and self._failures[0] < horizon:
            self._failures.popleft()

    def _transition_locked(self, target: CircuitState, *, error: str | None = None) -> None:
        previous = self._state
        self._state = target
        self._last_transition_at = self._clock.monotonic()
        if target is not CircuitState.OPEN:
            self._failures.clear()
        logger.warning(
            "circuit_state_changed",
            dependency=self.dependency,
            previous=previous.value,
            state=target.value,
            error=error,
        )
