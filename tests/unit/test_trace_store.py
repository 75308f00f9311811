import pytest

from message_search.obs.logging import query_hash
from message_search.obs.tracing import SearchTraceStore


def _record(store: SearchTraceStore, latency_ms: float, outcome: str = "ok", partial: bool = False):
    return store.create_record(
        query_hash=query_hash("payment decision"),
        conversation_scoped=False,
        result_count=1,
        partial=partial,
        filter_degraded=False,
        outcome=outcome,
        latency_ms=latency_ms,
    )


def test_summary_aggregates_latency_and_outcomes() -> None:
    store = SearchTraceStore()
    for latency in range(1, 20):
        _record(store, float(latency))
    _record(store, 100.0, partial=True)
    _record(store, 5.0, outcome="unavailable")
    _record(store, 5.0, outcome="invalid_input")

    summary = store.summary()

    assert summary["total_queries"] == 22
    assert summary["error_count"] == 2
    assert summary["unavailable_count"] == 1
    assert summary["partial_ratio"] == pytest.approx(1 / 22)
    assert summary["p95_latency_ms"] == 18.0


def test_empty_summary() -> None:
    assert SearchTraceStore().summary()["total_queries"] == 0


def test_store_is_bounded_and_lookup_works() -> None:
    store = SearchTraceStore(capacity=3)
    records = [_record(store, float(index)) for index in range(5)]

    assert [r.trace_id for r in store.list_recent(limit=10)] == [r.trace_id for r in records[2:]]
    assert store.get(records[-1].trace_id) is records[-1]
    with pytest.raises(KeyError):
        store.get(records[0].trace_id)


def test_traces_hold_only_the_query_hash() -> None:
    record = _record(SearchTraceStore(), 1.0)

    assert record.query_hash == query_hash("payment decision")
    assert "payment" not in record.query_hash
    assert len(record.query_hash) == 16


def test_list_recent_with_non_positive_limit_is_empty() -> None:
    store = SearchTraceStore()
    _record(store, 5.0)

    assert store.list_recent(limit=0) == []
    assert len(store.list_recent(limit=5)) == 1
