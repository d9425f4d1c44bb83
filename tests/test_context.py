from __future__ import annotations

from memoria.condensation import CondensationWorker
from memoria.context import assemble_context, record_exchange
from memoria.store import FileAttachment, MemoryStore, Sender


def test_context_is_all_hot_before_compaction(store: MemoryStore, embedder) -> None:
    store.append_exchange("c1", "q1", "a1")
    store.append_exchange("c1", "q2", "a2")
    store.update_system_instruction("c1", "Be brief.")

    context = assemble_context(store, "c1", "anything", embedder=embedder)

    assert [turn.text for turn in context.hot] == ["q1", "a1", "q2", "a2"]
    assert context.cold == []
    assert context.compaction_required is False
    assert context.system_instruction == "Be brief."


def test_context_retrieves_cold_memories_after_compaction(
    store: MemoryStore, summarizer, embedder
) -> None:
    first = store.append_exchange("c1", "where is the cat?", "The cat sat on the mat")
    second = store.append_exchange("c1", "and then?", "The cat chased a ball")
    CondensationWorker(store, summarizer=summarizer, embedder=embedder).run_pending()
    store.record_token_count("c1", 100, max_context=300)
    store.append_exchange("c1", "what now?", "Time for a nap")
    store.record_token_count("c1", 200, max_context=300)

    context = assemble_context(store, "c1", "cat", k=5, embedder=embedder)

    assert context.compaction_required is True
    assert context.hot[0].id == second
    assert [turn.text for turn in context.hot][-2:] == ["what now?", "Time for a nap"]
    assert [item.memory.raw_memory_id for item in context.cold] == [first]


def test_context_keeps_hot_window_after_compaction_is_handled(
    store: MemoryStore, embedder
) -> None:
    store.append_exchange("c1", "q1", "a1")
    second = store.append_exchange("c1", "q2", "a2")
    store.record_token_count("c1", 100, max_context=300)
    store.append_exchange("c1", "q3", "a3")
    store.append_exchange("c1", "q4", "a4")
    store.record_token_count("c1", 200, max_context=300)
    store.mark_compaction_handled("c1")

    handled = assemble_context(store, "c1", "anything", embedder=embedder)
    assert handled.compaction_required is False
    assert handled.hot[0].id == second
    assert len(handled.hot) == 5

    fifth = store.append_exchange("c1", "q5", "a5")
    store.record_token_count("c1", 290, max_context=300)

    raised = assemble_context(store, "c1", "anything", embedder=embedder)
    assert raised.compaction_required is True
    assert [turn.id for turn in raised.hot] == [fifth]


def test_context_for_unknown_conversation_is_empty(store: MemoryStore, embedder) -> None:
    context = assemble_context(store, "new", "hello", embedder=embedder)

    assert context.hot == []
    assert context.cold == []
    assert context.system_instruction is None


def test_record_exchange_stores_turns_tokens_and_schedules(
    store: MemoryStore, summarizer, embedder
) -> None:
    worker = CondensationWorker(store, summarizer=summarizer, embedder=embedder)

    model_id = record_exchange(
        store,
        "c1",
        "describe this file",
        "It is a shopping list.",
        worker=worker,
        total_tokens=42,
        attachments=[FileAttachment(file_name="list.txt", content_base64="bWlsaw==")],
    )

    turns = store.all_raw("c1")
    assert [turn.sender for turn in turns] == [Sender.USER, Sender.MODEL]
    assert turns[-1].id == model_id
    assert [f.file_type for f in store.message_files(turns[0].id)] == ["text/plain"]
    header = store.get_header("c1")
    assert header is not None
    assert header.total_token_count == 42
    assert worker.enqueue(model_id) is False
