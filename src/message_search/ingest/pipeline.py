"""Indexing orchestrator: normalize -> embed -> extract -> upsert -> status."""

from __future__ import annotations

from message_search.config import IndexingConfig
from message_search.errors import EmptyInputError, MessageNotFoundError, MessageSearchError
from message_search.ingest.embedder import EmbeddingClient
from message_search.ingest.metadata import MetadataExtractor
from message_search.ingest.normalizer import TextNormalizer
from message_search.ingest.workers import KeyedLocks
from message_search.obs.logging import get_logger
from message_search.resilience.clock import Clock, Deadline, SystemClock
from message_search.retrieval.index_client import VectorIndexClient
from message_search.store import MessageStore
from message_search.types import (
    IndexingOutcome,
    IndexingStep,
    IndexMetadata,
    IndexStatus,
    MessageRecord,
)

logger = get_logger(__name__)


class IndexingOrchestrator:
    """Drives one message through the indexing state machine.

    Steps run sequentially for a message; calls for the same message id are
    serialized by a per-id lock so concurrent upserts cannot leave a stale
    vector behind. Under that lock the current record is re-read from the
    store, so whichever run finishes last indexes the newest text.

    Failures set ``index_status`` to ``failed``, are logged with the message
    id and the step, and are re-raised to the direct caller. They never touch
    the message itself.
    """

    def __init__(
        self,
        store: MessageStore,
        normalizer: TextNormalizer,
        embedding_client: EmbeddingClient,
        extractor: MetadataExtractor,
        index_client: VectorIndexClient,
        *,
        config: IndexingConfig | None = None,
        clock: Clock | None = None,
    ) -> None:
        self._store = store
        self._normalizer = normalizer
        self._embedding_client = embedding_client
        self._extractor = extractor
        self._index_client = index_client
        self.config = config or IndexingConfig()
        self._clock = clock or SystemClock()
        self._locks = KeyedLocks()

    def index_message(
        self, record: MessageRecord, *, deadline: Deadline | None = None
    ) -> IndexingOutcome:
        """Index (or re-index) a message; idempotent per message id."""

        deadline = deadline or Deadline.after(self._clock, self.config.operation_deadline_seconds)
        started = self._clock.monotonic()
        with self._locks.hold(record.message_id):
            current = self._store.get_message(record.message_id)
            if current is None:
                self._drop_entry(record.message_id, reason="message_gone")
                raise MessageNotFoundError(record.message_id)

            step = IndexingStep.NORMALIZED
            try:
                normalized = self._normalizer.normalize(current.text)

                step = IndexingStep.EMBEDDED
                vector = self._embedding_client.embed(normalized.text, deadline)

                step = IndexingStep.METADATA_EXTRACTED
                participants = self._store.conversation_members(current.conversation_id)
                signals = self._extractor.extract(normalized.text, participants)
                metadata = IndexMetadata(
                    conversation_id=current.conversation_id,
                    sender_id=current.sender_id,
                    created_at=current.created_at.timestamp(),
                    keywords=signals.keywords,
                    mentioned_participants=signals.mentioned_participants,
                    decision_made=signals.decision_made,
                    has_action_item=signals.has_action_item,
                    truncated=normalized.truncated,
                )

                step = IndexingStep.INDEXED
                self._index_client.upsert(current.message_id, vector, metadata, deadline)
                marked = self._store.update_index_status(current.message_id, IndexStatus.INDEXED)
            except Exception as exc:
                self._record_failure(current, step, exc)
                raise

            if not marked:
                # Deleted while being indexed; its delete event may already have run.
                self._drop_entry(current.message_id, reason="message_gone")
                raise MessageNotFoundError(current.message_id)

        elapsed_ms = (self._clock.monotonic() - started) * 1000.0
        logger.info(
            "message_indexed",
            message_id=current.message_id,
            conversation_id=current.conversation_id,
            keywords=len(metadata.keywords),
            truncated=normalized.truncated,
            elapsed_ms=round(elapsed_ms, 2),
        )
        return IndexingOutcome(
            message_id=current.message_id,
            status=IndexStatus.INDEXED,
            step=IndexingStep.INDEXED,
            elapsed_ms=elapsed_ms,
        )

    def delete_message(self, message_id: str, *, deadline: Deadline | None = None) -> None:
        deadline = deadline or Deadline.after(self._clock, self.config.operation_deadline_seconds)
        with self._locks.hold(message_id):
            try:
                self._index_client.delete(message_id, deadline)
            except MessageSearchError as exc:
                logger.error(
                    "index_entry_delete_failed", message_id=message_id, error_code=exc.code
                )
                raise
        logger.info("index_entry_deleted", message_id=message_id)

    def _record_failure(self, record: MessageRecord, step: IndexingStep, exc: Exception) -> None:
        self._store.update_index_status(record.message_id, IndexStatus.FAILED)
        code = exc.code if isinstance(exc, MessageSearchError) else "internal"
        if isinstance(exc, EmptyInputError):
            logger.info("indexing_skipped_empty", message_id=record.message_id, step=step.value)
        else:
            logger.error(
                "indexing_failed",
                message_id=record.message_id,
                step=step.value,
                error_code=code,
                error=str(exc),
            )
        # An entry may be left from an earlier run or from an upsert whose
        # response was lost; status is now failed, so it must go.
        if record.index_status is IndexStatus.INDEXED or step is IndexingStep.INDEXED:
            self._drop_entry(record.message_id, reason="stale_after_failure")

    def _drop_entry(self, message_id: str, *, reason: str) -> None:
        deadline = Deadline.after(self._clock, self.config.operation_deadline_seconds)
        try:
            self._index_client.delete(message_id, deadline)
        except MessageSearchError as exc:
            logger.error(
                "stale_entry_delete_failed",
                message_id=message_id,
                reason=reason,
                error_code=exc.code,
            )
            return
        logger.info("stale_entry_deleted", message_id=message_id, reason=reason)
