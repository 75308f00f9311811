"""Retrying client around the vector store."""

from __future__ import annotations

from message_search.errors import InvalidInputError
from message_search.obs.logging import get_logger
from message_search.resilience.clock import Deadline
from message_search.resilience.retry import Retrier
from message_search.retrieval.vector_store import VectorStore
from message_search.types import IndexEntry, IndexMetadata, QueryResponse, SearchFilter

logger = get_logger(__name__)


class VectorIndexClient:
    """Upserts, queries and deletes index entries under one retry policy.

    When the underlying store cannot filter natively, ``query`` over-fetches
    ``limit * overfetch_factor`` unfiltered candidates and filters them
    client-side. That degraded mode may return fewer than ``limit`` matches
    even when more qualifying entries exist; responses carry
    ``filter_degraded=True`` so callers can surface the caveat.
    """

    def __init__(
        self,
        store: VectorStore,
        retrier: Retrier,
        *,
        dimension: int,
        overfetch_factor: int = 4,
    ) -> None:
        self.store = store
        self.retrier = retrier
        self.dimension = dimension
        self.overfetch_factor = overfetch_factor

    def upsert(
        self,
        message_id: str,
        vector: list[float],
        metadata: IndexMetadata,
        deadline: Deadline,
    ) -> None:
        self._check_vector(vector)
        entry = IndexEntry(message_id=message_id, vector=vector, metadata=metadata)
        self.retrier.call(
            lambda timeout: self.store.upsert(entry, timeout=timeout),
            deadline,
            name="upsert",
        )

    def query(
        self,
        vector: list[float],
        limit: int,
        search_filter: SearchFilter | None,
        deadline: Deadline,
    ) -> QueryResponse:
        self._check_vector(vector)
        if limit < 1:
            raise InvalidInputError(f"invalid limit: {limit}")

        active_filter = None if search_filter is None or search_filter.is_empty else search_filter
        if active_filter is None or self.store.supports_native_filter:
            matches = self.retrier.call(
                lambda timeout: self.store.query(vector, limit, active_filter, timeout=timeout),
                deadline,
                name="query",
            )
            return QueryResponse(matches=matches[:limit])

        fetch = limit * self.overfetch_factor
        candidates = self.retrier.call(
            lambda timeout: self.store.query(vector, fetch, None, timeout=timeout),
            deadline,
            name="query",
        )
        matches = [match for match in candidates if active_filter.matches(match.metadata)]
        logger.info(
            "vector_filter_degraded",
            requested=limit,
            fetched=len(candidates),
            kept=len(matches),
        )
        return QueryResponse(matches=matches[:limit], filter_degraded=True)

    def delete(self, message_id: str, deadline: Deadline) -> None:
        self.retrier.call(
            lambda timeout: self.store.delete(message_id, timeout=timeout),
            deadline,
            name="delete",
        )

    def _check_vector(self, vector: list[float]) -> None:
        if len(vector) != self.dimension:
            raise InvalidInputError(
                f"invalid vector dimensions: {len(vector)}, expected {self.dimension}"
            )
