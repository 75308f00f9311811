"""FastAPI entrypoint for message events, search, status and trace endpoints."""

from __future__ import annotations

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import asdict
from datetime import datetime
from typing import Any

from fastapi import FastAPI, HTTPException, Query, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from message_search.config import Settings
from message_search.errors import (
    DeadlineExceededError,
    DependencyError,
    DependencyUnavailableError,
    InvalidInputError,
    MessageNotFoundError,
    MessageSearchError,
    OverloadedError,
    PermissionDeniedError,
)
from message_search.obs.logging import configure_logging, get_logger
from message_search.service import MessageSearchService, build_service
from message_search.store import InMemoryMessageStore
from message_search.types import MessageRecord, SearchQuery, SearchResult

logger = get_logger(__name__)

_STATUS_BY_ERROR: list[tuple[type[MessageSearchError], int]] = [
    (InvalidInputError, 400),
    (PermissionDeniedError, 403),
    (MessageNotFoundError, 404),
    (OverloadedError, 429),
    (DependencyUnavailableError, 503),
    (DeadlineExceededError, 504),
    (DependencyError, 502),
]


class MessageEvent(BaseModel):
    message_id: str = Field(min_length=1)
    conversation_id: str = Field(min_length=1)
    sender_id: str = Field(min_length=1)
    text: str = ""
    created_at: datetime

    def to_record(self) -> MessageRecord:
        return MessageRecord(
            message_id=self.message_id,
            conversation_id=self.conversation_id,
            sender_id=self.sender_id,
            text=self.text,
            created_at=self.created_at,
        )


class MessageDeletedEvent(BaseModel):
    message_id: str = Field(min_length=1)


class SearchRequest(BaseModel):
    query: str
    user_id: str = Field(min_length=1)
    conversation_id: str | None = None
    limit: int | None = None
    min_score: float | None = None
    created_after: datetime | None = None
    created_before: datetime | None = None


class ReindexRequest(BaseModel):
    older_than: datetime | None = None
    batch_size: int | None = Field(default=None, ge=1, le=1000)


def _status_for(exc: MessageSearchError) -> int:
    for error_type, status_code in _STATUS_BY_ERROR:
        if isinstance(exc, error_type):
            return status_code
    return 500


def _serialize_result(result: SearchResult) -> dict[str, Any]:
    return {
        "message_id": result.message_id,
        "conversation_id": result.conversation_id,
        "sender_id": result.sender_id,
        "created_at": result.created_at.isoformat(),
        "similarity": result.similarity,
        "score": result.score,
        "rank": result.rank,
        "text": result.record.text if result.record is not None else None,
    }


def create_app(
    service: MessageSearchService, *, ingest_store: InMemoryMessageStore | None = None
) -> FastAPI:
    """Build the HTTP app around ``service``.

    With ``ingest_store`` the app is also the front door of that message
    store: event payloads are written to it before indexing is triggered.
    Without it, records are expected to already be in the service's store.
    """

    @asynccontextmanager
    async def lifespan(_: FastAPI) -> AsyncIterator[None]:
        service.start()
        try:
            yield
        finally:
            service.stop()

    app = FastAPI(title="Message Search", version="0.1.0", lifespan=lifespan)

    @app.exception_handler(MessageSearchError)
    async def handle_search_error(_: Request, exc: MessageSearchError) -> JSONResponse:
        status_code = _status_for(exc)
        if status_code in (502, 503):
            # Which dependency failed is an operator concern, not a caller one.
            detail = "search is temporarily unavailable"
        else:
            detail = exc.message
        return JSONResponse(status_code=status_code, content={"error": exc.code, "detail": detail})

    def accept(event: MessageEvent) -> MessageRecord:
        record = event.to_record()
        if ingest_store is not None:
            record = ingest_store.record_message(record)
        return record

    @app.get("/health")
    def health() -> dict[str, Any]:
        return service.health()

    @app.post("/events/message-created", status_code=202)
    def message_created(event: MessageEvent) -> dict[str, Any]:
        service.on_message_created(accept(event))
        return {"accepted": True, "message_id": event.message_id}

    @app.post("/events/message-edited", status_code=202)
    def message_edited(event: MessageEvent) -> dict[str, Any]:
        service.on_message_edited(accept(event))
        return {"accepted": True, "message_id": event.message_id}

    @app.post("/events/message-deleted", status_code=202)
    def message_deleted(event: MessageDeletedEvent) -> dict[str, Any]:
        if ingest_store is not None:
            ingest_store.delete_message(event.message_id)
        service.on_message_deleted(event.message_id)
        return {"accepted": True, "message_id": event.message_id}

    @app.post("/messages/index")
    def index_message(event: MessageEvent) -> dict[str, Any]:
        outcome = service.index_message(accept(event))
        return {
            "message_id": outcome.message_id,
            "status": outcome.status.value,
            "elapsed_ms": outcome.elapsed_ms,
        }

    @app.get("/messages/{message_id}/index-status")
    def index_status(message_id: str) -> dict[str, Any]:
        return {"message_id": message_id, "index_status": service.index_status(message_id).value}

    @app.post("/search")
    def search(request: SearchRequest) -> dict[str, Any]:
        response = service.semantic_search(
            SearchQuery(
                text=request.query,
                user_id=request.user_id,
                conversation_id=request.conversation_id,
                limit=request.limit,
                min_score=request.min_score,
                created_after=request.created_after,
                created_before=request.created_before,
            )
        )
        return {
            "results": [_serialize_result(result) for result in response.results],
            "metadata": asdict(response.metadata),
        }

    @app.post("/maintenance/reindex")
    def reindex(request: ReindexRequest) -> dict[str, Any]:
        report = service.reindex_failed(older_than=request.older_than, batch_size=request.batch_size)
        return asdict(report)

    @app.get("/traces")
    def traces(limit: int = Query(default=20, ge=1, le=500)) -> dict[str, Any]:
        records = [asdict(record) for record in service.trace_store.list_recent(limit=limit)]
        return {"items": records}

    @app.get("/traces/{trace_id}")
    def trace_detail(trace_id: str) -> dict[str, Any]:
        try:
            record = service.trace_store.get(trace_id)
        except KeyError as exc:
            raise HTTPException(status_code=404, detail=str(exc)) from exc
        return asdict(record)

    @app.get("/metrics")
    def metrics() -> dict[str, Any]:
        return service.trace_store.summary()

    return app


_settings = Settings()
configure_logging(_settings.log_level, json_logs=_settings.log_json)
_store = InMemoryMessageStore()
app = create_app(build_service(_settings, _store), ingest_store=_store)
