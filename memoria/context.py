from __future__ import annotations

import logging
from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from .errors import StorageError
from .semantic import Embedder
from .store import FileAttachment, MemoryStore, RawMemory, ScoredMemory, conversation_id
from .thresholds import hot_window_start

if TYPE_CHECKING:
    from .condensation import CondensationWorker

logger = logging.getLogger(__name__)


@dataclass
class PromptContext:
    conversation_id: str
    hot: list[RawMemory] = field(default_factory=list)
    cold: list[ScoredMemory] = field(default_factory=list)
    compaction_required: bool = False
    system_instruction: str | None = None
    response_schema: str | None = None


def record_exchange(
    store: MemoryStore,
    conversation: str,
    user_text: str,
    model_text: str,
    *,
    worker: CondensationWorker | None = None,
    total_tokens: int | None = None,
    attachments: Sequence[FileAttachment] = (),
) -> int:
    """Persist a completed exchange, schedule its condensation and apply the token total.

    Storage failures on the append propagate so the caller can offer a retry; the
    condensation enqueue and token bookkeeping only log on failure.
    """
    model_id = store.append_exchange(conversation, user_text, model_text, attachments=attachments)
    if worker is not None:
        try:
            worker.enqueue(model_id)
        except StorageError as exc:
            logger.warning(
                "condensation enqueue failed: %s", exc, extra={"raw_memory_id": model_id}
            )
    if total_tokens is not None:
        try:
            store.record_token_count(conversation, total_tokens)
        except StorageError as exc:
            logger.warning("token count update failed: %s", exc)
    return model_id


def assemble_context(
    store: MemoryStore,
    conversation: str,
    query: str,
    *,
    k: int = 5,
    embedder: Embedder | None = None,
) -> PromptContext:
    """Split a conversation into verbatim hot turns and retrieved cold memories.

    Until compaction is required every turn is hot and nothing is retrieved. Once it
    is, turns older than the one-third watermark are only reachable through
    condensed-memory retrieval, and they stay out of the prompt after the compaction
    has been handled.
    """
    cid = conversation_id(conversation)
    header = store.get_header(cid)
    start_id = hot_window_start(header)
    context = PromptContext(
        conversation_id=cid,
        compaction_required=bool(header and header.context_compaction_required),
        system_instruction=header.system_instruction if header else None,
        response_schema=header.response_schema if header else None,
    )
    context.hot = store.all_raw(cid, min_id=start_id)
    if start_id is not None:
        context.cold = store.retrieve_relevant(
            cid, query, k, embedder=embedder, before_raw_id=start_id
        )
    return context
