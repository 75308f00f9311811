"""Shared domain models."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


class IndexStatus(str, Enum):
    """Searchability state of a message, owned by the message store."""

    PENDING = "pending"
    INDEXED = "indexed"
    FAILED = "failed"


class IndexingStep(str, Enum):
    """Steps of the per-message indexing state machine."""

    RECEIVED = "received"
    NORMALIZED = "normalized"
    EMBEDDED = "embedded"
    METADATA_EXTRACTED = "metadata-extracted"
    INDEXED = "indexed"
    FAILED = "failed"


@dataclass(slots=True)
class MessageRecord:
    """A chat message as stored by the external message store."""

    message_id: str
    conversation_id: str
    sender_id: str
    text: str
    created_at: datetime
    index_status: IndexStatus = IndexStatus.PENDING


@dataclass(slots=True, frozen=True)
class NormalizedText:
    """Output of the text normalizer."""

    text: str
    truncated: bool
    original_length: int


@dataclass(slots=True, frozen=True)
class Participant:
    """A conversation member with the names they can be mentioned by."""

    user_id: str
    aliases: tuple[str, ...] = ()


@dataclass(slots=True)
class MessageSignals:
    """Lightweight structured signals extracted from message text."""

    keywords: list[str]
    mentioned_participants: list[str]
    decision_made: bool = False
    has_action_item: bool = False


@dataclass(slots=True)
class IndexMetadata:
    """Metadata stored next to a vector in the index."""

    conversation_id: str
    sender_id: str
    created_at: float
    keywords: list[str] = field(default_factory=list)
    mentioned_participants: list[str] = field(default_factory=list)
    decision_made: bool = False
    has_action_item: bool = False
    truncated: bool = False

    def to_payload(self) -> dict[str, Any]:
        return {
            "conversation_id": self.conversation_id,
            "sender_id": self.sender_id,
            "created_at": self.created_at,
            "keywords": list(self.keywords),
            "mentioned_participants": list(self.mentioned_participants),
            "decision_made": self.decision_made,
            "has_action_item": self.has_action_item,
            "truncated": self.truncated,
        }

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> "IndexMetadata":
        return cls(
            conversation_id=str(payload["conversation_id"]),
            sender_id=str(payload["sender_id"]),
            created_at=float(payload["created_at"]),
            keywords=list(payload.get("keywords") or []),
            mentioned_participants=list(payload.get("mentioned_participants") or []),
            decision_made=bool(payload.get("decision_made", False)),
            has_action_item=bool(payload.get("has_action_item", False)),
            truncated=bool(payload.get("truncated", False)),
        )


@dataclass(slots=True)
class IndexEntry:
    """A vector plus metadata, keyed by message identifier."""

    message_id: str
    vector: list[float]
    metadata: IndexMetadata


@dataclass(slots=True, frozen=True)
class SearchFilter:
    """Metadata filter applied to a similarity query.

    ``conversation_ids`` is an equality-set filter on conversation id;
    ``created_after``/``created_before`` bound creation time (epoch seconds,
    inclusive).
    """

    conversation_ids: tuple[str, ...] | None = None
    created_after: float | None = None
    created_before: float | None = None

    def matches(self, metadata: IndexMetadata) -> bool:
        if self.conversation_ids is not None and metadata.conversation_id not in self.conversation_ids:
            return False
        if self.created_after is not None and metadata.created_at < self.created_after:
            return False
        if self.created_before is not None and metadata.created_at > self.created_before:
            return False
        return True

    @property
    def is_empty(self) -> bool:
        return (
            self.conversation_ids is None
            and self.created_after is None
            and self.created_before is None
        )


@dataclass(slots=True)
class VectorMatch:
    """A raw similarity match returned by the vector index."""

    message_id: str
    similarity: float
    metadata: IndexMetadata


@dataclass(slots=True)
class QueryResponse:
    """Matches plus whether the index filtered client-side."""

    matches: list[VectorMatch]
    filter_degraded: bool = False


@dataclass(slots=True)
class SearchQuery:
    """A natural-language query with its requesting scope."""

    text: str
    user_id: str
    conversation_id: str | None = None
    limit: int | None = None
    min_score: float | None = None
    created_after: datetime | None = None
    created_before: datetime | None = None


@dataclass(slots=True)
class SearchResult:
    """One ranked search hit.

    ``record`` is the full message read back from the store; it is ``None``
    when the read-back did not finish before the query deadline.
    """

    message_id: str
    conversation_id: str
    sender_id: str
    created_at: datetime
    similarity: float
    score: float
    rank: int = 0
    record: MessageRecord | None = None


@dataclass(slots=True)
class SearchMetadata:
    """Per-query facts returned next to the results."""

    normalized_query: str
    query_hash: str
    result_count: int
    elapsed_ms: float
    partial: bool = False
    filter_degraded: bool = False
    trace_id: str | None = None


@dataclass(slots=True)
class SearchResponse:
    results: list[SearchResult]
    metadata: SearchMetadata


@dataclass(slots=True)
class IndexingOutcome:
    """Result of one indexing run for a message."""

    message_id: str
    status: IndexStatus
    step: IndexingStep
    error_code: str | None = None
    elapsed_ms: float = 0.0


@dataclass(slots=True)
class SweepReport:
    processed: int = 0
    succeeded: int = 0
    failed: int = 0
