import random

import pytest
from fakes import FakeClock, embedding_timeout

from message_search.config import CircuitConfig, RetryConfig
from message_search.errors import (
    DeadlineExceededError,
    DependencyUnavailableError,
    InvalidInputError,
    PermanentDependencyError,
    TransientError,
)
from message_search.resilience.circuit import CircuitBreaker, CircuitState
from message_search.resilience.clock import Deadline
from message_search.resilience.retry import Retrier

NO_JITTER = RetryConfig(
    max_attempts=3,
    backoff_base_seconds=0.2,
    backoff_multiplier=2.0,
    jitter_ratio=0.0,
    attempt_timeout_seconds=2.0,
)


class _Operation:
    def __init__(self, *outcomes: object) -> None:
        self.outcomes = list(outcomes)
        self.timeouts: list[float] = []

    def __call__(self, timeout: float) -> object:
        self.timeouts.append(timeout)
        outcome = self.outcomes.pop(0)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


def _retrier(clock: FakeClock, policy: RetryConfig = NO_JITTER, threshold: int = 5) -> Retrier:
    circuit = CircuitBreaker("embedding", CircuitConfig(failure_threshold=threshold), clock=clock)
    return Retrier(circuit, policy, clock=clock, rng=random.Random(1))


def test_transient_failures_are_retried_with_exponential_backoff() -> None:
    clock = FakeClock()
    retrier = _retrier(clock)
    operation = _Operation(embedding_timeout(), embedding_timeout(), "ok")

    result = retrier.call(operation, Deadline.after(clock, 10.0), name="embed")

    assert result == "ok"
    assert clock.sleeps == pytest.approx([0.2, 0.4])
    assert len(operation.timeouts) == 3


def test_retries_stop_at_max_attempts() -> None:
    clock = FakeClock()
    retrier = _retrier(clock)
    operation = _Operation(embedding_timeout(), embedding_timeout(), embedding_timeout())

    with pytest.raises(TransientError):
        retrier.call(operation, Deadline.after(clock, 10.0), name="embed")

    assert len(operation.timeouts) == 3
    assert retrier.circuit.snapshot().failure_count == 3


def test_permanent_errors_are_not_retried() -> None:
    clock = FakeClock()
    retrier = _retrier(clock)
    operation = _Operation(PermanentDependencyError("unauthorized", dependency="embedding"))

    with pytest.raises(PermanentDependencyError):
        retrier.call(operation, Deadline.after(clock, 10.0), name="embed")

    assert len(operation.timeouts) == 1
    assert clock.sleeps == []


def test_invalid_input_is_not_retried_and_not_held_against_the_circuit() -> None:
    clock = FakeClock()
    retrier = _retrier(clock, threshold=1)
    operation = _Operation(InvalidInputError("too long"))

    with pytest.raises(InvalidInputError):
        retrier.call(operation, Deadline.after(clock, 10.0), name="embed")

    assert retrier.circuit.state is CircuitState.CLOSED


def test_attempt_timeout_never_exceeds_remaining_deadline() -> None:
    clock = FakeClock()
    retrier = _retrier(clock)
    operation = _Operation("ok")

    retrier.call(operation, Deadline.after(clock, 0.5), name="embed")

    assert operation.timeouts == [0.5]


def test_backoff_past_deadline_raises_deadline_exceeded() -> None:
    clock = FakeClock()
    retrier = _retrier(clock)
    operation = _Operation(embedding_timeout(), "never reached")

    with pytest.raises(DeadlineExceededError) as excinfo:
        retrier.call(operation, Deadline.after(clock, 0.1), name="embed")

    assert isinstance(excinfo.value.__cause__, TransientError)
    assert len(operation.timeouts) == 1


def test_expired_deadline_makes_no_attempt() -> None:
    clock = FakeClock()
    retrier = _retrier(clock)
    operation = _Operation("ok")
    deadline = Deadline.after(clock, 1.0)
    clock.advance(1.0)

    with pytest.raises(DeadlineExceededError):
        retrier.call(operation, deadline, name="embed")

    assert operation.timeouts == []


def test_cancelled_deadline_makes_no_attempt() -> None:
    clock = FakeClock()
    retrier = _retrier(clock)
    operation = _Operation("ok")
    deadline = Deadline.after(clock, 10.0)
    deadline.cancel()

    with pytest.raises(DeadlineExceededError) as excinfo:
        retrier.call(operation, deadline, name="embed")

    assert excinfo.value.cancelled is True
    assert operation.timeouts == []


def test_open_circuit_short_circuits_the_call() -> None:
    clock = FakeClock()
    retrier = _retrier(clock, threshold=1)
    retrier.circuit.record_failure()
    operation = _Operation("ok")

    with pytest.raises(DependencyUnavailableError):
        retrier.call(operation, Deadline.after(clock, 10.0), name="embed")

    assert operation.timeouts == []


def test_circuit_opening_mid_retry_stops_further_attempts() -> None:
    clock = FakeClock()
    retrier = _retrier(clock, threshold=2)
    operation = _Operation(embedding_timeout(), embedding_timeout(), "ok")

    with pytest.raises(DependencyUnavailableError):
        retrier.call(operation, Deadline.after(clock, 10.0), name="embed")

    assert len(operation.timeouts) == 2


def test_backoff_jitter_stays_within_ratio() -> None:
    clock = FakeClock()
    policy = RetryConfig(backoff_base_seconds=1.0, backoff_multiplier=2.0, jitter_ratio=0.1)
    retrier = _retrier(clock, policy)

    for attempt, base in [(1, 1.0), (2, 2.0), (3, 4.0)]:
        delay = retrier.backoff_delay(attempt)
        assert base * 0.9 <= delay <= base * 1.1
