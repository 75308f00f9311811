"""Service facade: the inbound events and outbound operations of the pipeline."""

from __future__ import annotations

import random
from datetime import datetime
from typing import Any

from message_search.config import Settings
from message_search.errors import MessageNotFoundError, MessageSearchError
from message_search.ingest.embedder import (
    EMBEDDING_DEPENDENCY,
    Embedder,
    EmbeddingClient,
    HashingEmbedder,
    OpenAIEmbedder,
)
from message_search.ingest.metadata import MetadataExtractor
from message_search.ingest.normalizer import TextNormalizer
from message_search.ingest.pipeline import IndexingOrchestrator
from message_search.ingest.workers import IndexingWorkerPool, IndexJob, JobKind
from message_search.obs.logging import get_logger
from message_search.obs.tracing import SearchTraceStore
from message_search.resilience.circuit import CircuitBreaker
from message_search.resilience.clock import Clock, Deadline, SystemClock
from message_search.resilience.retry import Retrier
from message_search.retrieval.index_client import VectorIndexClient
from message_search.retrieval.ranker import ResultRanker
from message_search.retrieval.retriever import QueryOrchestrator
from message_search.retrieval.vector_store import (
    VECTOR_DEPENDENCY,
    InMemoryVectorStore,
    QdrantVectorStore,
    VectorStore,
)
from message_search.store import MessageStore
from message_search.types import (
    IndexingOutcome,
    IndexStatus,
    MessageRecord,
    SearchQuery,
    SearchResponse,
    SweepReport,
)

logger = get_logger(__name__)


class MessageSearchService:
    """Wires the indexing and query paths around two circuit breakers.

    Event handlers (``on_message_*``) enqueue work and return immediately;
    indexing failures surface only as ``index_status = failed`` plus a log
    line. ``index_message`` and ``semantic_search`` are synchronous and raise
    typed errors to their caller.
    """

    def __init__(
        self,
        *,
        store: MessageStore,
        embedder: Embedder,
        vector_store: VectorStore,
        settings: Settings | None = None,
        clock: Clock | None = None,
        rng: random.Random | None = None,
    ) -> None:
        self.settings = settings or Settings()
        self.store = store
        self.vector_store = vector_store
        self._clock = clock or SystemClock()

        self.embedding_circuit = CircuitBreaker(
            EMBEDDING_DEPENDENCY, self.settings.embedding_circuit, clock=self._clock
        )
        self.vector_circuit = CircuitBreaker(
            VECTOR_DEPENDENCY, self.settings.vector_circuit, clock=self._clock
        )
        embedding_client = EmbeddingClient(
            embedder,
            Retrier(
                self.embedding_circuit, self.settings.embedding_retry, clock=self._clock, rng=rng
            ),
        )
        index_client = VectorIndexClient(
            vector_store,
            Retrier(self.vector_circuit, self.settings.vector_retry, clock=self._clock, rng=rng),
            dimension=embedder.dimension,
            overfetch_factor=self.settings.vector_index.overfetch_factor,
        )
        normalizer = TextNormalizer(self.settings.normalizer)

        self.indexer = IndexingOrchestrator(
            store,
            normalizer,
            embedding_client,
            MetadataExtractor(self.settings.metadata),
            index_client,
            config=self.settings.indexing,
            clock=self._clock,
        )
        self.searcher = QueryOrchestrator(
            store,
            normalizer,
            embedding_client,
            index_client,
            ResultRanker(self.settings.ranking),
            embedding_circuit=self.embedding_circuit,
            vector_circuit=self.vector_circuit,
            config=self.settings.query,
            clock=self._clock,
            trace_store=SearchTraceStore(),
        )
        self.pool = IndexingWorkerPool(
            self._process_job,
            workers=self.settings.indexing.workers,
            queue_capacity=self.settings.indexing.queue_capacity,
            deadline_seconds=self.settings.indexing.operation_deadline_seconds,
            clock=self._clock,
        )

    def __enter__(self) -> "MessageSearchService":
        self.start()
        return self

    def __exit__(self, exc_type: object, exc: object, tb: object) -> None:
        self.stop()

    @property
    def trace_store(self) -> SearchTraceStore:
        return self.searcher.trace_store

    def start(self) -> None:
        self.pool.start()

    def stop(self, *, cancel: bool = False) -> None:
        self.pool.stop(cancel=cancel)
        self.searcher.close()
        self.vector_store.close()

    def drain(self) -> None:
        """Block until all queued indexing work has been handled."""
        self.pool.join()

    # Inbound events ---------------------------------------------------------

    def on_message_created(self, record: MessageRecord) -> None:
        self.pool.submit(IndexJob(kind=JobKind.INDEX, message_id=record.message_id, record=record))

    def on_message_edited(self, record: MessageRecord) -> None:
        self.pool.submit(IndexJob(kind=JobKind.INDEX, message_id=record.message_id, record=record))

    def on_message_deleted(self, message_id: str) -> None:
        self.pool.submit(IndexJob(kind=JobKind.DELETE, message_id=message_id))

    # Outbound operations ----------------------------------------------------

    def index_message(self, record: MessageRecord) -> IndexingOutcome:
        return self.indexer.index_message(record)

    def semantic_search(
        self, query: SearchQuery, *, deadline: Deadline | None = None
    ) -> SearchResponse:
        return self.searcher.search(query, deadline=deadline)

    def index_status(self, message_id: str) -> IndexStatus:
        record = self.store.get_message(message_id)
        if record is None:
            raise MessageNotFoundError(message_id)
        return record.index_status

    def reindex_failed(
        self, *, older_than: datetime | None = None, batch_size: int | None = None
    ) -> SweepReport:
        """Retry one batch of failed messages synchronously."""

        cutoff = older_than or self._clock.now()
        batch = self.store.list_messages_with_status(
            IndexStatus.FAILED, cutoff, batch_size or self.settings.indexing.sweep_batch_size
        )
        report = SweepReport()
        for record in batch:
            report.processed += 1
            try:
                self.indexer.index_message(record)
            except MessageSearchError:
                report.failed += 1
                continue
            report.succeeded += 1
        logger.info(
            "reindex_sweep_completed",
            processed=report.processed,
            succeeded=report.succeeded,
            failed=report.failed,
        )
        return report

    def health(self) -> dict[str, Any]:
        circuits = {}
        for circuit in (self.embedding_circuit, self.vector_circuit):
            snapshot = circuit.snapshot()
            circuits[circuit.dependency] = {
                "state": snapshot.state.value,
                "failure_count": snapshot.failure_count,
                "total_successes": snapshot.total_successes,
                "total_failures": snapshot.total_failures,
                "last_latency_ms": snapshot.last_latency_ms,
            }
        search_available = all(item["state"] != "open" for item in circuits.values())
        return {
            "status": "ok" if search_available else "degraded",
            "search_available": search_available,
            "indexing_workers_running": self.pool.running,
            "indexing_queue_depth": self.pool.pending,
            "circuits": circuits,
        }

    def _process_job(self, job: IndexJob, deadline: Deadline) -> None:
        try:
            if job.kind is JobKind.DELETE:
                self.indexer.delete_message(job.message_id, deadline=deadline)
            elif job.record is not None:
                self.indexer.index_message(job.record, deadline=deadline)
        except MessageSearchError:
            # Already recorded on the message status and logged.
            return


def build_embedder(settings: Settings) -> Embedder:
    config = settings.embedding
    if config.provider == "openai":
        if not config.api_key:
            raise ValueError("embedding api_key is required for the openai provider")
        return OpenAIEmbedder(
            config.api_key,
            model=config.model,
            endpoint=config.endpoint,
            dimension=config.dimension,
        )
    return HashingEmbedder(dimension=config.dimension)


def build_vector_store(settings: Settings, *, dimension: int) -> VectorStore:
    config = settings.vector_index
    if config.provider == "qdrant":
        store = QdrantVectorStore(url=config.url, collection=config.collection, api_key=config.api_key)
        store.ensure_collection(dimension)
        return store
    return InMemoryVectorStore(native_filter=config.native_filter)


def build_service(settings: Settings, store: MessageStore) -> MessageSearchService:
    """Construct the production object graph from settings."""
    embedder = build_embedder(settings)
    vector_store = build_vector_store(settings, dimension=embedder.dimension)
    return MessageSearchService(
        store=store,
        embedder=embedder,
        vector_store=vector_store,
        settings=settings,
    )
