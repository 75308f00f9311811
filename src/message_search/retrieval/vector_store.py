"""Vector store interfaces and concrete adapters."""

from __future__ import annotations

import math
import threading
import uuid
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from dataclasses import dataclass
from math import sqrt
from typing import Any, Protocol

import httpx

from message_search.errors import InvalidInputError, PermanentDependencyError, TransientError
from message_search.types import IndexEntry, IndexMetadata, SearchFilter, VectorMatch

VECTOR_DEPENDENCY = "vector_index"


class VectorStore(Protocol):
    """Minimal vector store contract used by the index client."""

    supports_native_filter: bool

    def upsert(self, entry: IndexEntry, *, timeout: float) -> None:
        """Insert or atomically replace the entry for ``entry.message_id``."""

    def query(
        self,
        vector: list[float],
        limit: int,
        search_filter: SearchFilter | None,
        *,
        timeout: float,
    ) -> list[VectorMatch]:
        """Return up to ``limit`` matches by descending similarity."""

    def delete(self, message_id: str, *, timeout: float) -> None:
        """Remove the entry for ``message_id`` if present."""

    def close(self) -> None:
        """Release client-side resources."""


@dataclass(slots=True)
class _StoredVector:
    vector: list[float]
    metadata: IndexMetadata


class InMemoryVectorStore:
    """Deterministic vector store used for tests and local prototyping.

    ``native_filter=False`` makes the store ignore filters, which mimics an
    index product without metadata-filtered search.
    """

    def __init__(self, *, native_filter: bool = True) -> None:
        self.supports_native_filter = native_filter
        self._store: dict[str, _StoredVector] = {}
        self._lock = threading.Lock()

    def upsert(self, entry: IndexEntry, *, timeout: float) -> None:
        stored = _StoredVector(vector=list(entry.vector), metadata=entry.metadata)
        with self._lock:
            self._store[entry.message_id] = stored

    def query(
        self,
        vector: list[float],
        limit: int,
        search_filter: SearchFilter | None,
        *,
        timeout: float,
    ) -> list[VectorMatch]:
        with self._lock:
            items = list(self._store.items())
        if self.supports_native_filter and search_filter is not None:
            items = [(key, rec) for key, rec in items if search_filter.matches(rec.metadata)]
        ranked = sorted(
            (
                VectorMatch(
                    message_id=key,
                    similarity=_cosine_similarity(vector, rec.vector),
                    metadata=rec.metadata,
                )
                for key, rec in items
            ),
            key=lambda item: (-item.similarity, item.message_id),
        )
        return ranked[:limit]

    def delete(self, message_id: str, *, timeout: float) -> None:
        with self._lock:
            self._store.pop(message_id, None)

    def close(self) -> None:
        return None

    def get(self, message_id: str) -> IndexEntry | None:
        with self._lock:
            rec = self._store.get(message_id)
        if rec is None:
            return None
        return IndexEntry(message_id=message_id, vector=list(rec.vector), metadata=rec.metadata)

    def __len__(self) -> int:
        with self._lock:
            return len(self._store)


class QdrantVectorStore:
    """Qdrant adapter using payload-filtered similarity search.

    Qdrant point ids must be integers or UUIDs, so message ids are mapped to
    UUIDv5 point ids and the original id travels in the payload.

    Qdrant only takes whole-second request timeouts, so each call runs on a
    small executor and the caller stops waiting once its own timeout is
    spent. A call abandoned that way keeps its worker until Qdrant answers.
    """

    supports_native_filter = True

    def __init__(
        self,
        *,
        url: str,
        collection: str,
        api_key: str | None = None,
        client: Any | None = None,
        max_workers: int = 8,
    ) -> None:
        if client is None:
            from qdrant_client import QdrantClient

            client = QdrantClient(url=url, api_key=api_key)
        self._client = client
        self.collection = collection
        self._executor = ThreadPoolExecutor(
            max_workers=max_workers, thread_name_prefix="qdrant-call"
        )

    def ensure_collection(self, dimension: int) -> None:
        from qdrant_client import models

        if self._client.collection_exists(self.collection):
            return
        self._client.create_collection(
            collection_name=self.collection,
            vectors_config=models.VectorParams(size=dimension, distance=models.Distance.COSINE),
        )
        self._client.create_payload_index(
            collection_name=self.collection,
            field_name="conversation_id",
            field_schema=models.PayloadSchemaType.KEYWORD,
        )
        self._client.create_payload_index(
            collection_name=self.collection,
            field_name="created_at",
            field_schema=models.PayloadSchemaType.FLOAT,
        )

    def upsert(self, entry: IndexEntry, *, timeout: float) -> None:
        from qdrant_client import models

        payload = {**entry.metadata.to_payload(), "message_id": entry.message_id}
        self._call(
            self._client.upsert,
            collection_name=self.collection,
            points=[
                models.PointStruct(
                    id=point_id(entry.message_id),
                    vector=list(entry.vector),
                    payload=payload,
                )
            ],
            wait=True,
            timeout=timeout,
        )

    def query(
        self,
        vector: list[float],
        limit: int,
        search_filter: SearchFilter | None,
        *,
        timeout: float,
    ) -> list[VectorMatch]:
        response = self._call(
            self._client.query_points,
            collection_name=self.collection,
            query=list(vector),
            limit=limit,
            query_filter=build_qdrant_filter(search_filter),
            with_payload=True,
            timeout=timeout,
        )
        matches: list[VectorMatch] = []
        for point in response.points:
            payload = dict(point.payload or {})
            try:
                message_id = str(payload.pop("message_id"))
                metadata = IndexMetadata.from_payload(payload)
            except (KeyError, TypeError, ValueError) as exc:
                raise PermanentDependencyError(
                    f"malformed payload for point {point.id}", dependency=VECTOR_DEPENDENCY
                ) from exc
            matches.append(
                VectorMatch(
                    message_id=message_id,
                    similarity=float(point.score or 0.0),
                    metadata=metadata,
                )
            )
        return matches

    def delete(self, message_id: str, *, timeout: float) -> None:
        from qdrant_client import models

        self._call(
            self._client.delete,
            collection_name=self.collection,
            points_selector=models.PointIdsList(points=[point_id(message_id)]),
            wait=True,
            timeout=timeout,
        )

    def close(self) -> None:
        self._executor.shutdown(wait=False, cancel_futures=True)

    def _call(self, method: Any, *, timeout: float, **kwargs: Any) -> Any:
        from qdrant_client.http.exceptions import ResponseHandlingException, UnexpectedResponse

        server_timeout = math.floor(timeout)
        if server_timeout >= 1:
            kwargs["timeout"] = server_timeout
        future = self._executor.submit(method, **kwargs)
        try:
            return future.result(timeout=timeout)
        except FutureTimeoutError as exc:
            future.cancel()
            raise TransientError(
                f"no response within {timeout:.3f}s", dependency=VECTOR_DEPENDENCY, reason="timeout"
            ) from exc
        except UnexpectedResponse as exc:
            raise _classify_status(exc.status_code, str(exc)) from exc
        except (ResponseHandlingException, httpx.TimeoutException) as exc:
            raise TransientError(str(exc) or "timeout", dependency=VECTOR_DEPENDENCY, reason="timeout") from exc
        except httpx.TransportError as exc:
            raise TransientError(str(exc), dependency=VECTOR_DEPENDENCY, reason="network") from exc


def build_qdrant_filter(search_filter: SearchFilter | None) -> Any:
    """Translate a ``SearchFilter`` into a Qdrant payload filter."""
    if search_filter is None or search_filter.is_empty:
        return None

    from qdrant_client import models

    must: list[Any] = []
    if search_filter.conversation_ids is not None:
        must.append(
            models.FieldCondition(
                key="conversation_id",
                match=models.MatchAny(any=list(search_filter.conversation_ids)),
            )
        )
    if search_filter.created_after is not None or search_filter.created_before is not None:
        must.append(
            models.FieldCondition(
                key="created_at",
                range=models.Range(gte=search_filter.created_after, lte=search_filter.created_before),
            )
        )
    return models.Filter(must=must)


def point_id(message_id: str) -> str:
    return str(uuid.uuid5(uuid.NAMESPACE_URL, f"message:{message_id}"))


def _classify_status(status_code: int | None, detail: str) -> Exception:
    if status_code is not None and (status_code in (408, 429) or status_code >= 500):
        reason = "rate_limit" if status_code == 429 else "server_error"
        if status_code == 408:
            reason = "timeout"
        return TransientError(f"status {status_code}", dependency=VECTOR_DEPENDENCY, reason=reason)
    if status_code in (400, 422):
        return InvalidInputError(f"vector index rejected request ({status_code}): {detail[:200]}")
    return PermanentDependencyError(
        f"vector index request failed ({status_code}): {detail[:200]}",
        dependency=VECTOR_DEPENDENCY,
        status_code=status_code,
    )


def _cosine_similarity(a: list[float], b: list[float]) -> float:
    if not a or not b or len(a) != len(b):
        return 0.0
    numerator = sum(x * y for x, y in zip(a, b, strict=True))
    norm_a = sqrt(sum(x * x for x in a))
    norm_b = sqrt(sum(y * y for y in b))
    if norm_a == 0 or norm_b == 0:
        return 0.0
    return numerator / (norm_a * norm_b)
