"""Retry with exponential backoff, bounded by an operation deadline."""

from __future__ import annotations

import random
from collections.abc import Callable
from typing import TypeVar

from message_search.config import RetryConfig
from message_search.errors import (
    DeadlineExceededError,
    DependencyUnavailableError,
    InvalidInputError,
    TransientError,
)
from message_search.obs.logging import get_logger
from message_search.resilience.circuit import CircuitBreaker
from message_search.resilience.clock import Clock, Deadline, SystemClock

logger = get_logger(__name__)

T = TypeVar("T")


class Retrier:
    """Runs one external call type under a retry policy and a circuit.

    The loop is explicit: each attempt receives a timeout no larger than the
    time left on the deadline, and no attempt is started once the deadline
    has passed or the circuit refuses. Transient failures are retried with
    jittered exponential backoff; every other failure is raised at once.
    """

    def __init__(
        self,
        circuit: CircuitBreaker,
        policy: RetryConfig | None = None,
        *,
        clock: Clock | None = None,
        rng: random.Random | None = None,
    ) -> None:
        self.circuit = circuit
        self.policy = policy or RetryConfig()
        self._clock = clock or SystemClock()
        self._rng = rng or random.Random()

    @property
    def dependency(self) -> str:
        return self.circuit.dependency

    def call(self, operation: Callable[[float], T], deadline: Deadline, *, name: str) -> T:
        """Invoke ``operation(timeout_seconds)`` until it succeeds or gives up."""

        attempt = 0
        while True:
            if deadline.cancelled:
                raise DeadlineExceededError(f"{name} cancelled", cancelled=True)
            remaining = deadline.remaining()
            if remaining <= 0.0:
                raise DeadlineExceededError(f"{name} deadline exceeded after {attempt} attempts")
            if not self.circuit.allow_call():
                raise DependencyUnavailableError(self.dependency)

            attempt += 1
            timeout = min(self.policy.attempt_timeout_seconds, remaining)
            started = self._clock.monotonic()
            try:
                result = operation(timeout)
            except TransientError as exc:
                latency_ms = (self._clock.monotonic() - started) * 1000.0
                if deadline.cancelled:
                    self.circuit.release()
                    raise DeadlineExceededError(f"{name} cancelled", cancelled=True) from exc
                self.circuit.record_failure(latency_ms=latency_ms, error=exc.reason)
                if attempt >= self.policy.max_attempts:
                    logger.warning(
                        "dependency_retries_exhausted",
                        dependency=self.dependency,
                        operation=name,
                        attempts=attempt,
                        reason=exc.reason,
                    )
                    raise
                delay = self.backoff_delay(attempt)
                if delay >= deadline.remaining():
                    raise DeadlineExceededError(
                        f"{name} deadline exceeded after {attempt} attempts ({exc.reason})"
                    ) from exc
                logger.info(
                    "dependency_call_retrying",
                    dependency=self.dependency,
                    operation=name,
                    attempt=attempt,
                    reason=exc.reason,
                    delay_ms=round(delay * 1000.0, 1),
                )
                self._clock.sleep(delay)
                continue
            except InvalidInputError:
                # The dependency answered; the request was at fault.
                self.circuit.record_success(
                    latency_ms=(self._clock.monotonic() - started) * 1000.0
                )
                raise
            except Exception as exc:
                self.circuit.record_failure(
                    latency_ms=(self._clock.monotonic() - started) * 1000.0,
                    error=type(exc).__name__,
                )
                raise

            latency_ms = (self._clock.monotonic() - started) * 1000.0
            self.circuit.record_success(latency_ms=latency_ms)
            logger.debug(
                "dependency_call_succeeded",
                dependency=self.dependency,
                operation=name,
                attempts=attempt,
                latency_ms=round(latency_ms, 2),
            )
            return result

    def backoff_delay(self, attempt: int) -> float:
        base = self.policy.backoff_base_seconds * (self.policy.backoff_multiplier ** (attempt - 1))
        if self.policy.jitter_ratio <= 0.0:
            return base
        spread = base * self.policy.jitter_ratio
        return max(0.0, base + self._rng.uniform(-spread, spread))
