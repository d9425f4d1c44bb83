from __future__ import annotations

import dataclasses
import json
import logging

import typer
from rich import print
from rich.table import Table

from . import __version__, db
from .condensation import CondensationWorker
from .errors import MemoriaError
from .store import MemoryStore, Sender

app = typer.Typer(help="memoria: conversational memory engine")
db_app = typer.Typer(help="Database maintenance")
app.add_typer(db_app, name="db")


def _store(db_path: str | None) -> MemoryStore:
    return MemoryStore(db.resolve_db_path(db_path))


@app.callback()
def main(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
) -> None:
    if verbose:
        logging.basicConfig(level=logging.DEBUG)


@app.command()
def version() -> None:
    """Print the installed version."""

    print(__version__)


@db_app.command("init")
def init_db(db_path: str = typer.Option(None, help="Path to SQLite database")) -> None:
    """Create the database and schema if missing."""

    store = _store(db_path)
    try:
        print(f"[green]Initialized[/green] {store.db_path} (schema v{db.SCHEMA_VERSION})")
    finally:
        store.close()


@db_app.command("rebuild-fts")
def rebuild_fts(db_path: str = typer.Option(None, help="Path to SQLite database")) -> None:
    """Rebuild the full-text index from indexed condensed memories."""

    store = _store(db_path)
    try:
        count = store.rebuild_fts_index()
        print(f"Reindexed {count} condensed memories")
    finally:
        store.close()


@app.command()
def append(
    conversation: str = typer.Argument(..., help="Conversation id"),
    text: str = typer.Argument(..., help="Message text"),
    sender: Sender = typer.Option(Sender.USER, help="Who sent the message"),
    db_path: str = typer.Option(None, help="Path to SQLite database"),
) -> None:
    """Append a single turn to a conversation."""

    store = _store(db_path)
    try:
        raw_id = store.append_turn(conversation, sender, text)
        print(f"[green]Stored[/green] {sender.value} turn {raw_id}")
    finally:
        store.close()


@app.command()
def history(
    conversation: str = typer.Argument(..., help="Conversation id"),
    limit: int = typer.Option(20, help="Number of turns to show"),
    offset: int = typer.Option(0, help="Turns to skip, newest first"),
    db_path: str = typer.Option(None, help="Path to SQLite database"),
) -> None:
    """Show recent turns of a conversation, newest first."""

    store = _store(db_path)
    try:
        for item in store.page(conversation, limit=limit, offset=offset):
            print(f"[{item.id}] ({item.sender.value}) {item.text}")
    finally:
        store.close()


@app.command()
def edit(
    raw_memory_id: int = typer.Argument(..., help="Raw memory id"),
    text: str = typer.Argument(..., help="Replacement text"),
    db_path: str = typer.Option(None, help="Path to SQLite database"),
) -> None:
    """Replace the text of a stored turn."""

    store = _store(db_path)
    try:
        if not store.update_text(raw_memory_id, text):
            print(f"[red]Memory {raw_memory_id} not found[/red]")
            raise typer.Exit(code=1)
        print(f"Updated {raw_memory_id}")
    finally:
        store.close()


@app.command("delete-from")
def delete_from(
    conversation: str = typer.Argument(..., help="Conversation id"),
    cutoff_id: int = typer.Argument(..., help="First raw memory id to delete"),
    db_path: str = typer.Option(None, help="Path to SQLite database"),
) -> None:
    """Delete a turn and everything after it in the conversation."""

    store = _store(db_path)
    try:
        store.delete_from(conversation, cutoff_id)
        counts = store.counts(conversation)
        print(f"Remaining turns: {counts['raw']} (condensed: {counts['condensed']})")
    finally:
        store.close()


@app.command()
def conversations(db_path: str = typer.Option(None, help="Path to SQLite database")) -> None:
    """List conversations by most recent activity."""

    store = _store(db_path)
    try:
        table = Table("id", "name", "last activity (ms)")
        for info in store.list_conversations():
            table.add_row(info.conversation_id, info.name, str(info.last_timestamp))
        print(table)
    finally:
        store.close()


@app.command()
def rename(
    conversation: str = typer.Argument(..., help="Conversation id"),
    name: str = typer.Argument(..., help="New name"),
    db_path: str = typer.Option(None, help="Path to SQLite database"),
) -> None:
    """Rename a conversation."""

    store = _store(db_path)
    try:
        if not store.rename_conversation(conversation, name):
            print(f"[red]Conversation {conversation} not found[/red]")
            raise typer.Exit(code=1)
        print(f"Renamed {conversation}")
    finally:
        store.close()


@app.command("delete-conversation")
def delete_conversation(
    conversation: str = typer.Argument(..., help="Conversation id"),
    db_path: str = typer.Option(None, help="Path to SQLite database"),
) -> None:
    """Delete a conversation with all of its turns and condensed memories."""

    store = _store(db_path)
    try:
        removed = store.delete_conversation(conversation)
        print(f"Deleted {conversation} ({removed} turns)")
    finally:
        store.close()


@app.command()
def condense(
    limit: int = typer.Option(None, help="Maximum rows to process"),
    retry_failed: bool = typer.Option(
        False, help="Reset attempt counters of failed rows before processing"
    ),
    db_path: str = typer.Option(None, help="Path to SQLite database"),
) -> None:
    """Summarize and embed pending condensed memories now."""

    store = _store(db_path)
    try:
        if retry_failed:
            reset = store.reset_condensation_attempts()
            print(f"Reset {reset} failed rows")
        worker = CondensationWorker(store)
        counts = worker.run_pending(limit=limit, include_not_due=True)
        if not counts:
            print("Nothing to condense")
            return
        for status, count in sorted(counts.items()):
            print(f"{status}: {count}")
    finally:
        store.close()


@app.command()
def status(db_path: str = typer.Option(None, help="Path to SQLite database")) -> None:
    """Show condensation queue counts."""

    store = _store(db_path)
    try:
        counts = store.condensation_status()
        table = Table("status", "rows")
        for key, value in counts.items():
            table.add_row(key, str(value))
        print(table)
    finally:
        store.close()


@app.command()
def search(
    conversation: str = typer.Argument(..., help="Conversation id"),
    query: str = typer.Argument(..., help="Query text"),
    k: int = typer.Option(5, help="Number of memories to return"),
    db_path: str = typer.Option(None, help="Path to SQLite database"),
) -> None:
    """Retrieve condensed memories relevant to a query."""

    store = _store(db_path)
    try:
        try:
            results = store.retrieve_relevant(conversation, query, k)
        except MemoriaError as exc:
            print(f"[red]Retrieval failed:[/red] {exc}")
            raise typer.Exit(code=1) from exc
        for item in results:
            print(f"[{item.memory.raw_memory_id}] {item.memory.summary_text}")
            print(f"score={item.score:.3f}\n")
    finally:
        store.close()


@app.command()
def header(
    conversation: str = typer.Argument(..., help="Conversation id"),
    db_path: str = typer.Option(None, help="Path to SQLite database"),
) -> None:
    """Print a conversation header as JSON."""

    store = _store(db_path)
    try:
        item = store.get_header(conversation)
        if item is None:
            print(f"[red]Conversation {conversation} not found[/red]")
            raise typer.Exit(code=1)
        print(json.dumps(dataclasses.asdict(item), indent=2))
    finally:
        store.close()


@app.command()
def tokens(
    conversation: str = typer.Argument(..., help="Conversation id"),
    total: int = typer.Argument(..., help="Total token count reported by the model"),
    max_context: int = typer.Option(None, help="Context window size; defaults to config"),
    db_path: str = typer.Option(None, help="Path to SQLite database"),
) -> None:
    """Record the conversation's token total and update compaction watermarks."""

    store = _store(db_path)
    try:
        updated = store.record_token_count(conversation, total, max_context=max_context)
        print(
            f"tokens={updated.total_token_count} "
            f"one_third_id={updated.token_threshold_one_third_id} "
            f"two_thirds_id={updated.token_threshold_two_thirds_id} "
            f"compaction_required={updated.context_compaction_required}"
        )
    finally:
        store.close()


@app.command("compaction-handled")
def compaction_handled(
    conversation: str = typer.Argument(..., help="Conversation id"),
    db_path: str = typer.Option(None, help="Path to SQLite database"),
) -> None:
    """Clear the compaction flag and pin the hot window after an external compaction pass."""

    store = _store(db_path)
    try:
        if not store.mark_compaction_handled(conversation):
            print(f"[red]Conversation {conversation} not found[/red]")
            raise typer.Exit(code=1)
        print(f"Compaction handled for {conversation}")
    finally:
        store.close()


if __name__ == "__main__":
    app()
