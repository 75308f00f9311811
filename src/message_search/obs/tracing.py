"""Query tracing and latency accounting."""

from __future__ import annotations

import threading
import uuid
from collections import OrderedDict
from dataclasses import dataclass
from datetime import datetime, timezone


@dataclass(slots=True)
class SearchTraceRecord:
    trace_id: str
    timestamp_utc: str
    query_hash: str
    conversation_scoped: bool
    result_count: int
    partial: bool
    filter_degraded: bool
    outcome: str
    latency_ms: float


class SearchTraceStore:
    """Bounded in-memory trace storage for API-level observability.

    Only the query hash is kept, never the query text.
    """

    def __init__(self, *, capacity: int = 1000) -> None:
        self._records: OrderedDict[str, SearchTraceRecord] = OrderedDict()
        self._capacity = capacity
        self._lock = threading.Lock()

    def create_record(
        self,
        *,
        query_hash: str,
        conversation_scoped: bool,
        result_count: int,
        partial: bool,
        filter_degraded: bool,
        outcome: str,
        latency_ms: float,
    ) -> SearchTraceRecord:
        record = SearchTraceRecord(
            trace_id=str(uuid.uuid4()),
            timestamp_utc=datetime.now(timezone.utc).isoformat(),
            query_hash=query_hash,
            conversation_scoped=conversation_scoped,
            result_count=result_count,
            partial=partial,
            filter_degraded=filter_degraded,
            outcome=outcome,
            latency_ms=latency_ms,
        )
        with self._lock:
            self._records[record.trace_id] = record
            while len(self._records) > self._capacity:
                self._records.popitem(last=False)
        return record

    def get(self, trace_id: str) -> SearchTraceRecord:
        with self._lock:
            record = self._records.get(trace_id)
        if record is None:
            raise KeyError(f"Trace not found: {trace_id}")
        return record

    def list_recent(self, limit: int = 20) -> list[SearchTraceRecord]:
        if limit < 1:
            return []
        with self._lock:
            return list(self._records.values())[-limit:]

    def summary(self) -> dict[str, float | int]:
        """Aggregate query metrics for dashboard display."""
        with self._lock:
            records = list(self._records.values())
        total = len(records)
        if total == 0:
            return {
                "total_queries": 0,
                "avg_latency_ms": 0.0,
                "p95_latency_ms": 0.0,
                "partial_ratio": 0.0,
                "error_count": 0,
                "unavailable_count": 0,
            }

        latencies = sorted(record.latency_ms for record in records)
        p95_index = max(0, int((len(latencies) * 0.95) - 1))
        partial = sum(1 for record in records if record.partial)
        errors = sum(1 for record in records if record.outcome != "ok")
        unavailable = sum(1 for record in records if record.outcome == "unavailable")

        return {
            "total_queries": total,
            "avg_latency_ms": sum(latencies) / total,
            "p95_latency_ms": latencies[p95_index],
            "partial_ratio": partial / total,
            "error_count": errors,
            "unavailable_count": unavailable,
        }
