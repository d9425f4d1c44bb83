from __future__ import annotations

from ._store import MemoryStore
from .types import (
    CondensedMemory,
    CondensedStatus,
    ConversationHeader,
    ConversationId,
    ConversationInfo,
    FileAttachment,
    MessageFile,
    RawMemory,
    ScoredMemory,
    Sender,
    conversation_id,
)

__all__ = [
    "CondensedMemory",
    "CondensedStatus",
    "ConversationHeader",
    "ConversationId",
    "ConversationInfo",
    "FileAttachment",
    "MemoryStore",
    "MessageFile",
    "RawMemory",
    "ScoredMemory",
    "Sender",
    "conversation_id",
]
