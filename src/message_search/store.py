"""Message store collaborator: the contract the pipeline reads and updates."""

from __future__ import annotations

import threading
from dataclasses import replace
from datetime import datetime
from typing import Protocol

from message_search.errors import MessageNotFoundError
from message_search.types import IndexStatus, MessageRecord, Participant


class MessageStore(Protocol):
    """The parts of the external message store the pipeline depends on.

    The pipeline only reads messages and updates their ``index_status``; it
    never rewrites or deletes message text.
    """

    def get_message(self, message_id: str) -> MessageRecord | None:
        """Return the current record, or ``None`` if it no longer exists."""

    def update_index_status(self, message_id: str, status: IndexStatus) -> bool:
        """Set the status; return ``False`` if the message no longer exists."""

    def list_messages_with_status(
        self, status: IndexStatus, older_than: datetime, limit: int
    ) -> list[MessageRecord]:
        """Messages in ``status`` created before ``older_than``, oldest first."""

    def conversation_members(self, conversation_id: str) -> list[Participant]:
        """Participants of a conversation (empty if unknown)."""

    def conversations_for(self, user_id: str) -> list[str]:
        """Conversation ids the user belongs to."""


class InMemoryMessageStore:
    """Thread-safe in-process message store for tests and local runs."""

    def __init__(self) -> None:
        self._messages: dict[str, MessageRecord] = {}
        self._members: dict[str, dict[str, Participant]] = {}
        self._lock = threading.Lock()

    def add_conversation(self, conversation_id: str, participants: list[Participant]) -> None:
        with self._lock:
            self._members[conversation_id] = {p.user_id: p for p in participants}

    def save_message(self, record: MessageRecord) -> MessageRecord:
        with self._lock:
            self._messages[record.message_id] = replace(record)
        return replace(record)

    def record_message(self, record: MessageRecord) -> MessageRecord:
        """Create or update a message from an inbound event.

        An existing copy keeps its ``index_status``; the sender joins the
        conversation if not already a member.
        """
        with self._lock:
            current = self._messages.get(record.message_id)
            stored = replace(record)
            if current is not None:
                stored.index_status = current.index_status
            self._messages[record.message_id] = stored
            members = self._members.setdefault(record.conversation_id, {})
            members.setdefault(record.sender_id, Participant(record.sender_id))
            return replace(stored)

    def edit_message(self, message_id: str, text: str) -> MessageRecord:
        with self._lock:
            current = self._messages.get(message_id)
            if current is None:
                raise MessageNotFoundError(message_id)
            current.text = text
            return replace(current)

    def delete_message(self, message_id: str) -> None:
        with self._lock:
            self._messages.pop(message_id, None)

    def get_message(self, message_id: str) -> MessageRecord | None:
        with self._lock:
            record = self._messages.get(message_id)
            return replace(record) if record is not None else None

    def update_index_status(self, message_id: str, status: IndexStatus) -> bool:
        with self._lock:
            record = self._messages.get(message_id)
            if record is None:
                return False
            record.index_status = status
            return True

    def list_messages_with_status(
        self, status: IndexStatus, older_than: datetime, limit: int
    ) -> list[MessageRecord]:
        with self._lock:
            matching = [
                replace(record)
                for record in self._messages.values()
                if record.index_status is status and record.created_at < older_than
            ]
        matching.sort(key=lambda record: (record.created_at, record.message_id))
        return matching[:limit]

    def conversation_members(self, conversation_id: str) -> list[Participant]:
        with self._lock:
            return list(self._members.get(conversation_id, {}).values())

    def conversations_for(self, user_id: str) -> list[str]:
        with self._lock:
            return sorted(cid for cid, members in self._members.items() if user_id in members)
