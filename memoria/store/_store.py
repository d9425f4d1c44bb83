from __future__ import annotations

import contextlib
import logging
import sqlite3
import threading
import time
from collections.abc import Iterable, Iterator, Sequence
from pathlib import Path

from .. import db
from ..config import MemoriaConfig, load_config
from ..errors import StorageError
from ..semantic import Embedder
from ..thresholds import apply_token_count
from . import attachments as store_attachments
from . import condensed as store_condensed
from . import fts as store_fts
from . import headers as store_headers
from . import raw_memory as store_raw
from . import search as store_search
from .types import (
    CondensedMemory,
    ConversationHeader,
    ConversationInfo,
    FileAttachment,
    MessageFile,
    RawMemory,
    ScoredMemory,
    Sender,
    conversation_id,
)
from .utils import now_ms

logger = logging.getLogger(__name__)


class MemoryStore:
    """Single-connection SQLite memory store shared by the app and the condensation worker.

    Every public method runs under one re-entrant lock. Writes go through
    ``transaction()`` so a turn, its condensed placeholder and the header update
    commit together or not at all.
    """

    def __init__(
        self,
        db_path: Path | str | None = None,
        *,
        config: MemoriaConfig | None = None,
        check_same_thread: bool = False,
    ) -> None:
        self.config = config or load_config()
        self.db_path = db.resolve_db_path(db_path)
        self._lock = threading.RLock()
        self.conn = db.connect(self.db_path, check_same_thread=check_same_thread)
        db.initialize_schema(self.conn)

    def close(self) -> None:
        with self._lock:
            self.conn.close()

    @contextlib.contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        with self._lock:
            try:
                yield self.conn
            except sqlite3.Error as exc:
                self.conn.rollback()
                raise StorageError(str(exc)) from exc
            except BaseException:
                self.conn.rollback()
                raise
            else:
                try:
                    self.conn.commit()
                except sqlite3.Error as exc:
                    self.conn.rollback()
                    raise StorageError(str(exc)) from exc

    @contextlib.contextmanager
    def read(self, *, timeout_ms: int | None = None) -> Iterator[sqlite3.Connection]:
        with self._lock:
            if timeout_ms:
                deadline = time.monotonic() + timeout_ms / 1000.0
                self.conn.set_progress_handler(lambda: int(time.monotonic() > deadline), 1000)
            try:
                yield self.conn
            except sqlite3.Error as exc:
                raise StorageError(str(exc)) from exc
            finally:
                if timeout_ms:
                    self.conn.set_progress_handler(None, 0)

    # Raw memories

    def append_turn(
        self,
        conversation: str,
        sender: Sender | str,
        text: str,
        *,
        timestamp: int | None = None,
    ) -> int:
        """Append one turn. Model turns get their NEW condensed placeholder in the same commit."""
        cid = conversation_id(conversation)
        sender = Sender(sender)
        ts = timestamp if timestamp is not None else now_ms()
        with self.transaction() as conn:
            store_headers.ensure(conn, cid, timestamp=ts)
            raw_id = store_raw.append(
                conn, conversation_id=cid, sender=sender, text=text, timestamp=ts
            )
            if sender is Sender.MODEL:
                store_condensed.create_placeholder(
                    conn, raw_memory_id=raw_id, conversation_id=cid, timestamp=ts
                )
            store_headers.touch(conn, cid, ts)
        return raw_id

    def append_user_turn(
        self,
        conversation: str,
        text: str,
        *,
        attachments: Sequence[FileAttachment] = (),
        timestamp: int | None = None,
    ) -> int:
        cid = conversation_id(conversation)
        ts = timestamp if timestamp is not None else now_ms()
        with self.transaction() as conn:
            store_headers.ensure(conn, cid, timestamp=ts)
            raw_id = store_raw.append(
                conn, conversation_id=cid, sender=Sender.USER, text=text, timestamp=ts
            )
            for attachment in attachments:
                store_attachments.save(conn, raw_id, attachment)
            store_headers.touch(conn, cid, ts)
        return raw_id

    def append_model_turn(
        self, conversation: str, text: str, *, timestamp: int | None = None
    ) -> int:
        return self.append_turn(conversation, Sender.MODEL, text, timestamp=timestamp)

    def append_exchange(
        self,
        conversation: str,
        user_text: str,
        model_text: str,
        *,
        attachments: Sequence[FileAttachment] = (),
        timestamp: int | None = None,
    ) -> int:
        """Store a user query and the model reply together; returns the model turn id."""
        cid = conversation_id(conversation)
        ts = timestamp if timestamp is not None else now_ms()
        with self.transaction() as conn:
            store_headers.ensure(conn, cid, timestamp=ts)
            user_id = store_raw.append(
                conn, conversation_id=cid, sender=Sender.USER, text=user_text, timestamp=ts - 1
            )
            for attachment in attachments:
                store_attachments.save(conn, user_id, attachment)
            model_id = store_raw.append(
                conn, conversation_id=cid, sender=Sender.MODEL, text=model_text, timestamp=ts
            )
            store_condensed.create_placeholder(
                conn, raw_memory_id=model_id, conversation_id=cid, timestamp=ts
            )
            store_headers.touch(conn, cid, ts)
        return model_id

    def get_raw(self, raw_memory_id: int) -> RawMemory | None:
        with self.read() as conn:
            return store_raw.get(conn, raw_memory_id)

    def page(self, conversation: str, limit: int, offset: int = 0) -> list[RawMemory]:
        cid = conversation_id(conversation)
        with self.read() as conn:
            return store_raw.page(conn, cid, limit=limit, offset=offset)

    def all_raw(self, conversation: str, *, min_id: int | None = None) -> list[RawMemory]:
        cid = conversation_id(conversation)
        with self.read() as conn:
            return store_raw.all_for_conversation(conn, cid, min_id=min_id)

    def update_text(self, raw_memory_id: int, new_text: str) -> bool:
        with self.transaction() as conn:
            return store_raw.update_text(conn, raw_memory_id, new_text)

    def delete_from(self, conversation: str, cutoff_id: int) -> None:
        """Remove the turn at ``cutoff_id`` and every later turn, with condensed and FTS rows."""
        cid = conversation_id(conversation)
        with self.transaction() as conn:
            store_condensed.delete_from(conn, cid, cutoff_id)
            store_raw.delete_from(conn, cid, cutoff_id)

    def counts(self, conversation: str) -> dict[str, int]:
        cid = conversation_id(conversation)
        with self.read() as conn:
            return {
                "raw": store_raw.count(conn, cid),
                "model": store_raw.count(conn, cid, sender=Sender.MODEL),
                "condensed": store_condensed.count(conn, cid),
                "pending": store_condensed.pending_count(conn, cid),
            }

    # Condensed memories

    def get_condensed(self, condensed_id: int) -> CondensedMemory | None:
        with self.read() as conn:
            return store_condensed.get(conn, condensed_id)

    def get_condensed_for_raw(self, raw_memory_id: int) -> CondensedMemory | None:
        with self.read() as conn:
            return store_condensed.get_by_raw_memory_id(conn, raw_memory_id)

    def mark_indexed(self, condensed_id: int, summary: str, vector: Sequence[float]) -> bool:
        with self.transaction() as conn:
            return store_condensed.mark_indexed(
                conn,
                condensed_id,
                summary=summary,
                vector=vector,
                dim=self.config.embedding_dim,
            )

    def pending(
        self,
        *,
        due_before: int | None = None,
        max_attempts: int | None = None,
        limit: int | None = None,
    ) -> list[CondensedMemory]:
        with self.read() as conn:
            return store_condensed.pending(
                conn, due_before=due_before, max_attempts=max_attempts, limit=limit
            )

    def pending_count(self, conversation: str | None = None) -> int:
        cid = conversation_id(conversation) if conversation is not None else None
        with self.read() as conn:
            return store_condensed.pending_count(conn, cid)

    def condensation_status(self) -> dict[str, int]:
        with self.read() as conn:
            return store_condensed.status_counts(conn)

    def record_condensation_failure(
        self,
        condensed_id: int,
        *,
        error: str,
        next_attempt_at: int,
        exhausted: bool = False,
    ) -> int:
        with self.transaction() as conn:
            return store_condensed.record_failure(
                conn,
                condensed_id,
                error=error,
                next_attempt_at=next_attempt_at,
                min_attempt_count=self.config.condense_max_attempts if exhausted else 0,
            )

    def reset_condensation_attempts(self, conversation: str | None = None) -> int:
        cid = conversation_id(conversation) if conversation is not None else None
        with self.transaction() as conn:
            return store_condensed.reset_attempts(conn, cid)

    def rebuild_fts_index(self) -> int:
        with self.transaction() as conn:
            return store_fts.rebuild(conn)

    # Conversation headers

    def get_header(self, conversation: str) -> ConversationHeader | None:
        cid = conversation_id(conversation)
        with self.read() as conn:
            return store_headers.get(conn, cid)

    def create_conversation(self, conversation: str, name: str | None = None) -> bool:
        cid = conversation_id(conversation)
        with self.transaction() as conn:
            return store_headers.ensure(
                conn,
                cid,
                timestamp=now_ms(),
                name=name or store_headers.DEFAULT_CONVERSATION_NAME,
            )

    def list_conversations(self) -> list[ConversationInfo]:
        with self.read() as conn:
            return store_headers.list_conversations(conn)

    def rename_conversation(self, conversation: str, name: str) -> bool:
        cid = conversation_id(conversation)
        with self.transaction() as conn:
            renamed = store_headers.rename(conn, cid, name, now_ms())
        if not renamed:
            logger.warning("rename: conversation header not found", extra={"conversation_id": cid})
        return renamed

    def update_response_schema(self, conversation: str, response_schema: str | None) -> bool:
        cid = conversation_id(conversation)
        with self.transaction() as conn:
            return store_headers.update_field(conn, cid, "response_schema", response_schema)

    def update_system_instruction(self, conversation: str, system_instruction: str | None) -> bool:
        cid = conversation_id(conversation)
        with self.transaction() as conn:
            return store_headers.update_field(conn, cid, "system_instruction", system_instruction)

    def delete_conversation(self, conversation: str) -> int:
        cid = conversation_id(conversation)
        with self.transaction() as conn:
            store_condensed.delete_conversation(conn, cid)
            removed = store_raw.delete_conversation(conn, cid)
            store_headers.delete(conn, cid)
        return removed

    def record_token_count(
        self,
        conversation: str,
        total_tokens: int,
        *,
        max_context: int | None = None,
    ) -> ConversationHeader:
        """Apply the latest usage total to the header and move watermarks if a mark was reached."""
        cid = conversation_id(conversation)
        limit = max_context if max_context is not None else self.config.max_context_tokens
        with self.transaction() as conn:
            store_headers.ensure(conn, cid, timestamp=now_ms())
            header = store_headers.get(conn, cid)
            if header is None:
                raise StorageError(f"conversation header missing for {cid}")
            updated = apply_token_count(
                header,
                total_tokens,
                max_context=limit,
                latest_raw_id=store_raw.latest_id(conn, cid),
            )
            store_headers.save_token_state(conn, updated)
        if updated.context_compaction_required and not header.context_compaction_required:
            logger.info(
                "context compaction required",
                extra={
                    "conversation_id": cid,
                    "total_tokens": total_tokens,
                    "one_third_id": updated.token_threshold_one_third_id,
                },
            )
        return updated

    def mark_compaction_handled(self, conversation: str) -> bool:
        cid = conversation_id(conversation)
        with self.transaction() as conn:
            return store_headers.mark_compaction_handled(conn, cid, now_ms())

    # Attachments

    def message_files(self, raw_memory_id: int) -> list[MessageFile]:
        with self.read() as conn:
            return store_attachments.for_memory(conn, raw_memory_id)

    def save_message_files(
        self, raw_memory_id: int, attachments: Iterable[FileAttachment]
    ) -> list[int]:
        with self.transaction() as conn:
            return [store_attachments.save(conn, raw_memory_id, item) for item in attachments]

    def delete_message_file(self, file_id: int) -> bool:
        with self.transaction() as conn:
            return store_attachments.delete(conn, file_id)

    # Retrieval

    def retrieve_relevant(
        self,
        conversation: str,
        query: str,
        k: int,
        *,
        embedder: Embedder | None = None,
        before_raw_id: int | None = None,
    ) -> list[ScoredMemory]:
        return store_search.retrieve_relevant(
            self,
            conversation,
            query,
            k,
            embedder=embedder,
            before_raw_id=before_raw_id,
        )
