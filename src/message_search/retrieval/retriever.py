"""Query orchestrator: semantic search under a hard deadline."""

from __future__ import annotations

from concurrent.futures import Future, ThreadPoolExecutor, wait

from message_search.config import QueryConfig
from message_search.errors import (
    DependencyUnavailableError,
    EmptyInputError,
    InvalidInputError,
    MessageSearchError,
    PermissionDeniedError,
)
from message_search.ingest.embedder import EmbeddingClient
from message_search.ingest.normalizer import TextNormalizer
from message_search.obs.logging import get_logger, query_hash
from message_search.obs.tracing import SearchTraceStore
from message_search.resilience.circuit import CircuitBreaker, CircuitState
from message_search.resilience.clock import Clock, Deadline, SystemClock
from message_search.retrieval.index_client import VectorIndexClient
from message_search.retrieval.ranker import ResultRanker
from message_search.store import MessageStore
from message_search.types import (
    MessageRecord,
    SearchFilter,
    SearchMetadata,
    SearchQuery,
    SearchResponse,
    SearchResult,
    VectorMatch,
)

logger = get_logger(__name__)


class QueryOrchestrator:
    """Turns a natural-language query into ranked messages.

    Pipeline: validate -> consult circuits -> resolve scope -> embed ->
    filtered similarity query -> parallel record read-back -> rank.

    The overall deadline covers embedding, index query and read-back. If it
    runs out during read-back, the matches gathered so far are returned with
    ``partial=True`` (results whose record did not arrive carry
    ``record=None``); if it runs out earlier, ``DeadlineExceededError`` is
    raised because nothing has been gathered yet.
    """

    def __init__(
        self,
        store: MessageStore,
        normalizer: TextNormalizer,
        embedding_client: EmbeddingClient,
        index_client: VectorIndexClient,
        ranker: ResultRanker,
        *,
        embedding_circuit: CircuitBreaker,
        vector_circuit: CircuitBreaker,
        config: QueryConfig | None = None,
        clock: Clock | None = None,
        trace_store: SearchTraceStore | None = None,
    ) -> None:
        self._store = store
        self._normalizer = normalizer
        self._embedding_client = embedding_client
        self._index_client = index_client
        self._ranker = ranker
        self._circuits = (embedding_circuit, vector_circuit)
        self.config = config or QueryConfig()
        self._clock = clock or SystemClock()
        self.trace_store = trace_store or SearchTraceStore()
        self._fetch_pool = ThreadPoolExecutor(
            max_workers=self.config.fetch_workers, thread_name_prefix="record-fetch"
        )

    def search(self, query: SearchQuery, *, deadline: Deadline | None = None) -> SearchResponse:
        started = self._clock.monotonic()
        qhash = query_hash((query.text or "").strip())
        try:
            text = self._validate_text(query.text)
            limit, min_score = self._validate_bounds(query)
            self._check_circuits()
            deadline = (
                deadline.within(self.config.deadline_seconds)
                if deadline is not None
                else Deadline.after(self._clock, self.config.deadline_seconds)
            )
            response = self._run(query, text, qhash, limit, min_score, deadline, started)
        except MessageSearchError as exc:
            elapsed_ms = (self._clock.monotonic() - started) * 1000.0
            self.trace_store.create_record(
                query_hash=qhash,
                conversation_scoped=query.conversation_id is not None,
                result_count=0,
                partial=False,
                filter_degraded=False,
                outcome=exc.code,
                latency_ms=elapsed_ms,
            )
            logger.warning(
                "semantic_search_failed",
                query_hash=qhash,
                user_id=query.user_id,
                error_code=exc.code,
                elapsed_ms=round(elapsed_ms, 2),
            )
            raise
        return response

    def close(self) -> None:
        self._fetch_pool.shutdown(wait=False, cancel_futures=True)

    def _run(
        self,
        query: SearchQuery,
        text: str,
        qhash: str,
        limit: int,
        min_score: float,
        deadline: Deadline,
        started: float,
    ) -> SearchResponse:
        search_filter = self._scope_filter(query)
        partial = False
        filter_degraded = False
        results: list[SearchResult] = []

        if search_filter.conversation_ids:
            vector = self._embedding_client.embed(text, deadline)
            candidates = limit * self.config.candidate_multiplier
            index_response = self._index_client.query(vector, candidates, search_filter, deadline)
            filter_degraded = index_response.filter_degraded
            matches, records, partial = self._fetch_records(index_response.matches, deadline)

            ranked = self._ranker.rank(matches, self._clock.now())
            for item in ranked:
                if item.similarity < min_score:
                    continue
                item.record = records.get(item.message_id)
                results.append(item)
                if len(results) >= limit:
                    break
            for position, item in enumerate(results, start=1):
                item.rank = position

        elapsed_ms = (self._clock.monotonic() - started) * 1000.0
        trace = self.trace_store.create_record(
            query_hash=qhash,
            conversation_scoped=query.conversation_id is not None,
            result_count=len(results),
            partial=partial,
            filter_degraded=filter_degraded,
            outcome="ok",
            latency_ms=elapsed_ms,
        )
        logger.info(
            "semantic_search_completed",
            query_hash=qhash,
            user_id=query.user_id,
            results=len(results),
            partial=partial,
            filter_degraded=filter_degraded,
            elapsed_ms=round(elapsed_ms, 2),
        )
        return SearchResponse(
            results=results,
            metadata=SearchMetadata(
                normalized_query=text,
                query_hash=qhash,
                result_count=len(results),
                elapsed_ms=elapsed_ms,
                partial=partial,
                filter_degraded=filter_degraded,
                trace_id=trace.trace_id,
            ),
        )

    def _validate_text(self, raw: str) -> str:
        try:
            normalized = self._normalizer.normalize(raw)
        except EmptyInputError as exc:
            raise InvalidInputError("query must not be empty") from exc
        length = normalized.original_length
        if length < self.config.min_query_chars:
            raise InvalidInputError(
                f"query must be at least {self.config.min_query_chars} characters"
            )
        if length > self.config.max_query_chars:
            raise InvalidInputError(
                f"query must be at most {self.config.max_query_chars} characters"
            )
        return normalized.text

    def _validate_bounds(self, query: SearchQuery) -> tuple[int, float]:
        limit = self.config.default_limit if query.limit is None else query.limit
        if not self.config.min_limit <= limit <= self.config.max_limit:
            raise InvalidInputError(
                f"limit must be between {self.config.min_limit} and {self.config.max_limit}"
            )
        min_score = self.config.default_min_score if query.min_score is None else query.min_score
        if not 0.0 <= min_score <= 1.0:
            raise InvalidInputError("min_score must be between 0 and 1")
        if (
            query.created_after is not None
            and query.created_before is not None
            and query.created_after > query.created_before
        ):
            raise InvalidInputError("created_after must not be later than created_before")
        return limit, min_score

    def _check_circuits(self) -> None:
        for circuit in self._circuits:
            if circuit.state is CircuitState.OPEN:
                raise DependencyUnavailableError(circuit.dependency)

    def _scope_filter(self, query: SearchQuery) -> SearchFilter:
        if query.conversation_id is not None:
            members = {p.user_id for p in self._store.conversation_members(query.conversation_id)}
            if query.user_id not in members:
                raise PermissionDeniedError("caller is not a member of this conversation")
            conversation_ids: tuple[str, ...] = (query.conversation_id,)
        else:
            conversation_ids = tuple(self._store.conversations_for(query.user_id))
        return SearchFilter(
            conversation_ids=conversation_ids,
            created_after=query.created_after.timestamp() if query.created_after else None,
            created_before=query.created_before.timestamp() if query.created_before else None,
        )

    def _fetch_records(
        self, matches: list[VectorMatch], deadline: Deadline
    ) -> tuple[list[VectorMatch], dict[str, MessageRecord], bool]:
        """Read back full records in parallel until the deadline.

        Returns the matches still worth ranking, the records that arrived,
        and whether any read-back was cut short.
        """
        if not matches:
            return [], {}, False

        futures: dict[str, Future[MessageRecord | None]] = {
            match.message_id: self._fetch_pool.submit(self._store.get_message, match.message_id)
            for match in matches
        }
        wait(futures.values(), timeout=deadline.remaining())

        kept: list[VectorMatch] = []
        records: dict[str, MessageRecord] = {}
        partial = False
        for match in matches:
            future = futures[match.message_id]
            if not future.done():
                future.cancel()
                partial = True
                kept.append(match)
                continue
            exc = future.exception()
            if exc is not None:
                logger.warning(
                    "record_fetch_failed", message_id=match.message_id, error=str(exc)
                )
                partial = True
                kept.append(match)
                continue
            record = future.result()
            if record is None:
                logger.warning("record_missing_for_match", message_id=match.message_id)
                continue
            records[match.message_id] = record
            kept.append(match)

        if partial:
            logger.info(
                "record_fetch_partial",
                requested=len(matches),
                fetched=len(records),
            )
        return kept, records, partial
