from __future__ import annotations

import pytest

from memoria.errors import StorageError
from memoria.store import CondensedStatus, FileAttachment, MemoryStore, Sender
from memoria.store import raw_memory as store_raw
from memoria.store.types import ConversationId


def _fts_rowids(store: MemoryStore) -> set[int]:
    rows = store.conn.execute("SELECT rowid FROM condensed_memory_fts").fetchall()
    return {int(row[0]) for row in rows}


def _index(store: MemoryStore, raw_id: int, summary: str) -> int:
    placeholder = store.get_condensed_for_raw(raw_id)
    assert placeholder is not None
    assert store.mark_indexed(placeholder.id, summary, [1.0] * store.config.embedding_dim)
    return placeholder.id


def test_append_turn_creates_header_and_model_placeholder(store: MemoryStore) -> None:
    user_id = store.append_turn("c1", "user", "hello there", timestamp=100)
    model_id = store.append_turn("c1", Sender.MODEL, "hi, how can I help?", timestamp=200)

    header = store.get_header("c1")
    assert header is not None
    assert header.name == "New conversation"
    assert header.creation_timestamp == 100
    assert header.last_update_timestamp == 200

    assert store.get_condensed_for_raw(user_id) is None
    placeholder = store.get_condensed_for_raw(model_id)
    assert placeholder is not None
    assert placeholder.status is CondensedStatus.NEW
    assert placeholder.summary_text == ""
    assert placeholder.vector is None
    assert placeholder.conversation_id == "c1"


def test_append_rejects_blank_conversation_id(store: MemoryStore) -> None:
    with pytest.raises(ValueError, match="conversation_id"):
        store.append_turn("   ", Sender.USER, "hello")
    with pytest.raises(ValueError):
        store.append_turn("c1", "robot", "hello")


def test_page_orders_newest_first(store: MemoryStore) -> None:
    store.append_turn("c1", Sender.USER, "first", timestamp=100)
    store.append_turn("c1", Sender.MODEL, "second", timestamp=200)
    store.append_turn("c1", Sender.USER, "third", timestamp=300)

    assert [m.text for m in store.page("c1", limit=2)] == ["third", "second"]
    assert [m.text for m in store.page("c1", limit=2, offset=2)] == ["first"]
    assert store.page("c1", limit=0) == []
    assert store.page("other", limit=10) == []


def test_page_breaks_timestamp_ties_by_id(store: MemoryStore) -> None:
    first = store.append_turn("c1", Sender.USER, "a", timestamp=100)
    second = store.append_turn("c1", Sender.USER, "b", timestamp=100)

    assert [m.id for m in store.page("c1", limit=5)] == [second, first]


def test_append_exchange_stores_both_turns_with_attachments(store: MemoryStore) -> None:
    model_id = store.append_exchange(
        "c1",
        "what is in this picture?",
        "a cat on a mat",
        attachments=[FileAttachment(file_name="photo.png", content_base64="aGVsbG8=")],
        timestamp=1_000,
    )

    turns = store.all_raw("c1")
    assert [(t.sender, t.text) for t in turns] == [
        (Sender.USER, "what is in this picture?"),
        (Sender.MODEL, "a cat on a mat"),
    ]
    user_turn, model_turn = turns
    assert model_turn.id == model_id
    assert user_turn.timestamp < model_turn.timestamp

    files = store.message_files(user_turn.id)
    assert len(files) == 1
    assert files[0].file_name == "photo.png"
    assert files[0].file_type == "image/png"
    assert store.message_files(model_id) == []
    assert store.get_condensed_for_raw(model_id) is not None


def test_message_files_default_type_and_delete(store: MemoryStore) -> None:
    raw_id = store.append_turn("c1", Sender.USER, "see attached")
    ids = store.save_message_files(
        raw_id,
        [
            FileAttachment(file_name="blob", content_base64="AA=="),
            FileAttachment(file_name="notes.txt", content_base64="AA==", file_type="text/x-notes"),
        ],
    )

    files = store.message_files(raw_id)
    assert [f.file_type for f in files] == ["application/octet-stream", "text/x-notes"]
    assert store.delete_message_file(ids[0]) is True
    assert store.delete_message_file(ids[0]) is False
    assert [f.file_name for f in store.message_files(raw_id)] == ["notes.txt"]


def test_update_text(store: MemoryStore) -> None:
    raw_id = store.append_turn("c1", Sender.USER, "typo")

    assert store.update_text(raw_id, "fixed") is True
    raw = store.get_raw(raw_id)
    assert raw is not None
    assert raw.text == "fixed"
    assert store.update_text(raw_id + 100, "missing") is False


def test_delete_from_removes_later_turns_condensed_and_fts(store: MemoryStore) -> None:
    first_model = store.append_exchange("c1", "q1", "cats purr", timestamp=100)
    second_model = store.append_exchange("c1", "q2", "dogs bark", timestamp=200)
    third_model = store.append_exchange("c1", "q3", "birds sing", timestamp=300)
    kept_condensed = _index(store, first_model, "cats purr")
    dropped_condensed = _index(store, third_model, "birds sing")
    cutoff = second_model - 1

    store.delete_from("c1", cutoff)

    assert [t.text for t in store.all_raw("c1")] == ["q1", "cats purr"]
    counts = store.counts("c1")
    assert counts["raw"] == 2
    assert counts["condensed"] == counts["model"] == 1
    assert store.get_condensed_for_raw(second_model) is None
    assert store.get_condensed(dropped_condensed) is None
    assert _fts_rowids(store) == {kept_condensed}


def test_delete_from_never_reuses_ids(store: MemoryStore) -> None:
    store.append_turn("c1", Sender.USER, "one")
    second = store.append_turn("c1", Sender.MODEL, "two")

    store.delete_from("c1", second)
    replacement = store.append_turn("c1", Sender.MODEL, "two again")

    assert replacement > second


def test_delete_from_only_touches_the_given_conversation(store: MemoryStore) -> None:
    store.append_exchange("c1", "q", "a")
    other_model = store.append_exchange("c2", "q", "b")

    store.delete_from("c1", 1)

    assert store.counts("c1")["raw"] == 0
    assert store.counts("c2")["raw"] == 2
    assert store.get_condensed_for_raw(other_model) is not None


def test_condensed_count_tracks_model_turns(store: MemoryStore) -> None:
    for index in range(3):
        store.append_exchange("c1", f"question {index}", f"answer {index}")
    store.append_turn("c1", Sender.USER, "dangling question")

    counts = store.counts("c1")
    assert counts["raw"] == 7
    assert counts["model"] == 3
    assert counts["condensed"] == 3
    assert counts["pending"] == 3


def test_mark_indexed_moves_row_out_of_pending(store: MemoryStore) -> None:
    model_id = store.append_exchange("c1", "q", "the answer")
    condensed_id = _index(store, model_id, "  short answer  ")

    condensed = store.get_condensed(condensed_id)
    assert condensed is not None
    assert condensed.status is CondensedStatus.INDEXED
    assert condensed.summary_text == "short answer"
    assert condensed.vector is not None
    assert len(condensed.vector) == 4 * store.config.embedding_dim
    assert store.pending_count("c1") == 0
    assert store.condensation_status()["INDEXED"] == 1


def test_pending_limit_zero_returns_no_rows(store: MemoryStore) -> None:
    first = store.append_exchange("c1", "q1", "a1", timestamp=1_000)
    store.append_exchange("c1", "q2", "a2", timestamp=2_000)

    assert store.pending(limit=0) == []
    assert [row.raw_memory_id for row in store.pending(limit=1)] == [first]
    assert len(store.pending()) == 2


def test_mark_indexed_requires_summary(store: MemoryStore) -> None:
    model_id = store.append_exchange("c1", "q", "the answer")
    placeholder = store.get_condensed_for_raw(model_id)
    assert placeholder is not None

    with pytest.raises(ValueError, match="summary"):
        store.mark_indexed(placeholder.id, "   ", [1.0] * store.config.embedding_dim)

    refreshed = store.get_condensed(placeholder.id)
    assert refreshed is not None
    assert refreshed.status is CondensedStatus.NEW


def test_record_failure_and_reset_attempts(store: MemoryStore) -> None:
    model_id = store.append_exchange("c1", "q", "the answer")
    placeholder = store.get_condensed_for_raw(model_id)
    assert placeholder is not None

    attempts = store.record_condensation_failure(
        placeholder.id, error="RuntimeError: boom", next_attempt_at=5_000
    )
    assert attempts == 1
    failed = store.get_condensed(placeholder.id)
    assert failed is not None
    assert failed.status is CondensedStatus.NEW
    assert failed.last_error == "RuntimeError: boom"
    assert failed.next_attempt_at == 5_000
    assert store.pending(due_before=4_999) == []
    assert store.condensation_status()["retrying"] == 1

    exhausted = store.record_condensation_failure(
        placeholder.id, error="InvalidVector: bad", next_attempt_at=0, exhausted=True
    )
    assert exhausted == store.config.condense_max_attempts
    assert store.pending(max_attempts=store.config.condense_max_attempts) == []

    assert store.reset_condensation_attempts() == 1
    reset = store.get_condensed(placeholder.id)
    assert reset is not None
    assert reset.attempt_count == 0
    assert reset.last_error is None


def test_rebuild_fts_index(store: MemoryStore) -> None:
    model_id = store.append_exchange("c1", "q", "a")
    condensed_id = _index(store, model_id, "rebuilt summary")
    store.conn.execute("DELETE FROM condensed_memory_fts")
    store.conn.commit()

    assert store.rebuild_fts_index() == 1
    assert _fts_rowids(store) == {condensed_id}


def test_delete_conversation_removes_everything(store: MemoryStore) -> None:
    model_id = store.append_exchange("c1", "q", "a")
    condensed_id = _index(store, model_id, "summary")
    store.append_exchange("c2", "q", "b")

    assert store.delete_conversation("c1") == 2

    assert store.get_header("c1") is None
    assert store.all_raw("c1") == []
    assert store.get_condensed(condensed_id) is None
    assert condensed_id not in _fts_rowids(store)
    assert store.counts("c2")["raw"] == 2


def test_list_conversations_orders_by_latest_activity(store: MemoryStore) -> None:
    store.append_turn("older", Sender.USER, "hi", timestamp=100)
    store.append_turn("newer", Sender.USER, "hi", timestamp=200)
    store.append_turn("older", Sender.USER, "again", timestamp=300)

    listed = store.list_conversations()

    assert [(c.conversation_id, c.last_timestamp) for c in listed] == [
        (ConversationId("older"), 300),
        (ConversationId("newer"), 200),
    ]


def test_create_and_rename_conversation(store: MemoryStore) -> None:
    assert store.create_conversation("c1", name="Trip planning") is True
    assert store.create_conversation("c1", name="Ignored") is False

    header = store.get_header("c1")
    assert header is not None
    assert header.name == "Trip planning"

    assert store.rename_conversation("c1", "Trip to Lisbon") is True
    renamed = store.get_header("c1")
    assert renamed is not None
    assert renamed.name == "Trip to Lisbon"
    assert store.rename_conversation("missing", "x") is False


def test_header_prompt_fields(store: MemoryStore) -> None:
    store.create_conversation("c1")

    assert store.update_system_instruction("c1", "Answer briefly.") is True
    assert store.update_response_schema("c1", '{"type": "object"}') is True
    header = store.get_header("c1")
    assert header is not None
    assert header.system_instruction == "Answer briefly."
    assert header.response_schema == '{"type": "object"}'
    assert store.update_system_instruction("missing", "x") is False


def test_transaction_rolls_back_on_error(store: MemoryStore) -> None:
    with pytest.raises(RuntimeError), store.transaction() as conn:
        store_raw.append(
            conn,
            conversation_id=ConversationId("c1"),
            sender=Sender.USER,
            text="never committed",
            timestamp=1,
        )
        raise RuntimeError("boom")

    assert store.all_raw("c1") == []


def test_transaction_wraps_sqlite_errors(store: MemoryStore) -> None:
    with pytest.raises(StorageError), store.transaction() as conn:
        conn.execute("INSERT INTO missing_table VALUES (1)")


def test_append_user_and_model_turns_separately(store: MemoryStore) -> None:
    user_id = store.append_user_turn(
        "c1",
        "read this",
        attachments=[FileAttachment(file_name="a.txt", content_base64="YQ==")],
        timestamp=100,
    )
    first_reply = store.append_model_turn("c1", "first draft", timestamp=200)
    regenerated = store.append_model_turn("c1", "second draft", timestamp=300)

    assert [f.file_name for f in store.message_files(user_id)] == ["a.txt"]
    assert store.get_condensed_for_raw(user_id) is None
    assert store.get_condensed_for_raw(first_reply) is not None
    assert store.get_condensed_for_raw(regenerated) is not None
    assert store.counts("c1") == {"raw": 3, "model": 2, "condensed": 2, "pending": 2}
