import random

import pytest
from fakes import FakeClock, ScriptedVectorStore, vector_timeout

from message_search.config import RetryConfig
from message_search.errors import InvalidInputError
from message_search.resilience.circuit import CircuitBreaker
from message_search.resilience.clock import Deadline
from message_search.resilience.retry import Retrier
from message_search.retrieval.index_client import VectorIndexClient
from message_search.types import IndexMetadata, SearchFilter


def _metadata(conversation_id: str, created_at: float = 1_700_000_000.0) -> IndexMetadata:
    return IndexMetadata(conversation_id=conversation_id, sender_id="alice", created_at=created_at)


def _client(store: ScriptedVectorStore, clock: FakeClock) -> VectorIndexClient:
    circuit = CircuitBreaker("vector_index", clock=clock)
    retrier = Retrier(circuit, RetryConfig(jitter_ratio=0.0), clock=clock, rng=random.Random(5))
    return VectorIndexClient(store, retrier, dimension=2, overfetch_factor=4)


def _populate(client: VectorIndexClient, clock: FakeClock) -> None:
    deadline = Deadline.after(clock, 5.0)
    client.upsert("m-a1", [1.0, 0.0], _metadata("conv-a"), deadline)
    client.upsert("m-a2", [0.6, 0.8], _metadata("conv-a"), deadline)
    client.upsert("m-b1", [0.9, 0.1], _metadata("conv-b"), deadline)


def test_upsert_replaces_existing_entry() -> None:
    clock = FakeClock()
    store = ScriptedVectorStore()
    client = _client(store, clock)
    deadline = Deadline.after(clock, 5.0)

    client.upsert("m-1", [1.0, 0.0], _metadata("conv-a"), deadline)
    client.upsert("m-1", [0.0, 1.0], _metadata("conv-a"), deadline)

    assert len(store) == 1
    entry = store.get("m-1")
    assert entry is not None and entry.vector == [0.0, 1.0]


def test_wrong_dimension_is_rejected_before_any_call() -> None:
    clock = FakeClock()
    store = ScriptedVectorStore()
    client = _client(store, clock)

    with pytest.raises(InvalidInputError):
        client.upsert("m-1", [1.0, 0.0, 0.0], _metadata("conv-a"), Deadline.after(clock, 5.0))
    with pytest.raises(InvalidInputError):
        client.query([1.0], 5, None, Deadline.after(clock, 5.0))

    assert store.upsert_calls == 0
    assert store.query_calls == []


def test_native_filter_is_pushed_down() -> None:
    clock = FakeClock()
    store = ScriptedVectorStore(native_filter=True)
    client = _client(store, clock)
    _populate(client, clock)
    search_filter = SearchFilter(conversation_ids=("conv-a",))

    response = client.query([1.0, 0.0], 5, search_filter, Deadline.after(clock, 5.0))

    assert [m.message_id for m in response.matches] == ["m-a1", "m-a2"]
    assert response.filter_degraded is False
    assert store.query_calls == [(5, search_filter)]


def test_degraded_filter_overfetches_and_filters_client_side() -> None:
    clock = FakeClock()
    store = ScriptedVectorStore(native_filter=False)
    client = _client(store, clock)
    _populate(client, clock)

    response = client.query(
        [1.0, 0.0], 1, SearchFilter(conversation_ids=("conv-a",)), Deadline.after(clock, 5.0)
    )

    assert [m.message_id for m in response.matches] == ["m-a1"]
    assert response.filter_degraded is True
    assert store.query_calls == [(4, None)]


def test_degraded_filter_applies_time_bounds() -> None:
    clock = FakeClock()
    store = ScriptedVectorStore(native_filter=False)
    client = _client(store, clock)
    deadline = Deadline.after(clock, 5.0)
    client.upsert("old", [1.0, 0.0], _metadata("conv-a", created_at=100.0), deadline)
    client.upsert("new", [0.9, 0.1], _metadata("conv-a", created_at=200.0), deadline)

    response = client.query(
        [1.0, 0.0], 5, SearchFilter(created_after=150.0), Deadline.after(clock, 5.0)
    )

    assert [m.message_id for m in response.matches] == ["new"]


def test_query_retries_transient_failures() -> None:
    clock = FakeClock()
    store = ScriptedVectorStore()
    client = _client(store, clock)
    _populate(client, clock)
    store.query_failures.append(vector_timeout())

    response = client.query([1.0, 0.0], 2, None, Deadline.after(clock, 5.0))

    assert len(response.matches) == 2
    assert len(store.query_calls) == 2


def test_delete_is_idempotent() -> None:
    clock = FakeClock()
    store = ScriptedVectorStore()
    client = _client(store, clock)
    _populate(client, clock)

    client.delete("m-a1", Deadline.after(clock, 5.0))
    client.delete("m-a1", Deadline.after(clock, 5.0))

    assert store.get("m-a1") is None
    assert len(store) == 2
