from __future__ import annotations

import sqlite3
from dataclasses import dataclass
from enum import StrEnum
from typing import NewType

ConversationId = NewType("ConversationId", str)


def conversation_id(value: str) -> ConversationId:
    cleaned = (value or "").strip()
    if not cleaned:
        raise ValueError("conversation_id is required")
    return ConversationId(cleaned)


class Sender(StrEnum):
    USER = "user"
    MODEL = "model"


class CondensedStatus(StrEnum):
    NEW = "NEW"
    INDEXED = "INDEXED"


@dataclass(frozen=True)
class RawMemory:
    id: int
    conversation_id: ConversationId
    sender: Sender
    text: str
    timestamp: int

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> RawMemory:
        return cls(
            id=int(row["id"]),
            conversation_id=ConversationId(row["conversation_id"]),
            sender=Sender(row["sender"]),
            text=str(row["text"]),
            timestamp=int(row["timestamp"]),
        )


@dataclass(frozen=True)
class CondensedMemory:
    id: int
    raw_memory_id: int
    conversation_id: ConversationId
    summary_text: str
    vector: bytes | None
    status: CondensedStatus
    timestamp: int
    attempt_count: int = 0
    next_attempt_at: int = 0
    last_error: str | None = None

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> CondensedMemory:
        return cls(
            id=int(row["id"]),
            raw_memory_id=int(row["raw_memory_id"]),
            conversation_id=ConversationId(row["conversation_id"]),
            summary_text=str(row["summary_text"] or ""),
            vector=bytes(row["vector"]) if row["vector"] is not None else None,
            status=CondensedStatus(row["status"]),
            timestamp=int(row["timestamp"]),
            attempt_count=int(row["attempt_count"] or 0),
            next_attempt_at=int(row["next_attempt_at"] or 0),
            last_error=row["last_error"],
        )


@dataclass(frozen=True)
class ConversationHeader:
    conversation_id: ConversationId
    name: str
    creation_timestamp: int
    last_update_timestamp: int
    total_token_count: int = 0
    token_threshold_one_third_id: int | None = None
    token_threshold_two_thirds_id: int | None = None
    context_compaction_required: bool = False
    compaction_handled_at: int | None = None
    hot_window_start_id: int | None = None
    response_schema: str | None = None
    system_instruction: str | None = None

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> ConversationHeader:
        return cls(
            conversation_id=ConversationId(row["conversation_id"]),
            name=str(row["name"]),
            creation_timestamp=int(row["creation_timestamp"]),
            last_update_timestamp=int(row["last_update_timestamp"]),
            total_token_count=int(row["total_token_count"] or 0),
            token_threshold_one_third_id=row["token_threshold_one_third_id"],
            token_threshold_two_thirds_id=row["token_threshold_two_thirds_id"],
            context_compaction_required=bool(row["context_compaction_required"]),
            compaction_handled_at=row["compaction_handled_at"],
            hot_window_start_id=row["hot_window_start_id"],
            response_schema=row["response_schema"],
            system_instruction=row["system_instruction"],
        )


@dataclass(frozen=True)
class ConversationInfo:
    conversation_id: ConversationId
    name: str
    last_timestamp: int


@dataclass(frozen=True)
class MessageFile:
    id: int
    raw_memory_id: int
    file_name: str
    file_type: str
    content_base64: str


@dataclass(frozen=True)
class FileAttachment:
    file_name: str
    content_base64: str
    file_type: str | None = None


@dataclass(frozen=True)
class FtsCandidate:
    id: int
    rank: float
    timestamp: int


@dataclass(frozen=True)
class ScoredMemory:
    memory: CondensedMemory
    score: float
