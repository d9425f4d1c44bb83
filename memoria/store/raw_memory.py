from __future__ import annotations

import sqlite3

from .types import ConversationId, RawMemory, Sender
from .utils import changes


def append(
    conn: sqlite3.Connection,
    *,
    conversation_id: ConversationId,
    sender: Sender,
    text: str,
    timestamp: int,
) -> int:
    cur = conn.execute(
        """
        INSERT INTO raw_memory(conversation_id, sender, text, timestamp)
        VALUES (?, ?, ?, ?)
        """,
        (conversation_id, Sender(sender).value, text, timestamp),
    )
    if cur.lastrowid is None:
        raise RuntimeError("Failed to insert raw memory")
    return int(cur.lastrowid)


def get(conn: sqlite3.Connection, raw_memory_id: int) -> RawMemory | None:
    row = conn.execute("SELECT * FROM raw_memory WHERE id = ?", (raw_memory_id,)).fetchone()
    return RawMemory.from_row(row) if row else None


def page(
    conn: sqlite3.Connection,
    conversation_id: ConversationId,
    *,
    limit: int,
    offset: int = 0,
) -> list[RawMemory]:
    if limit <= 0:
        return []
    rows = conn.execute(
        """
        SELECT * FROM raw_memory
        WHERE conversation_id = ?
        ORDER BY timestamp DESC, id DESC
        LIMIT ? OFFSET ?
        """,
        (conversation_id, limit, max(0, offset)),
    ).fetchall()
    return [RawMemory.from_row(row) for row in rows]


def all_for_conversation(
    conn: sqlite3.Connection,
    conversation_id: ConversationId,
    *,
    min_id: int | None = None,
) -> list[RawMemory]:
    params: list[object] = [conversation_id]
    where = "conversation_id = ?"
    if min_id is not None:
        where += " AND id >= ?"
        params.append(min_id)
    rows = conn.execute(
        f"SELECT * FROM raw_memory WHERE {where} ORDER BY timestamp ASC, id ASC",
        params,
    ).fetchall()
    return [RawMemory.from_row(row) for row in rows]


def latest_id(conn: sqlite3.Connection, conversation_id: ConversationId) -> int | None:
    row = conn.execute(
        "SELECT MAX(id) AS id FROM raw_memory WHERE conversation_id = ?",
        (conversation_id,),
    ).fetchone()
    if row is None or row["id"] is None:
        return None
    return int(row["id"])


def count(
    conn: sqlite3.Connection,
    conversation_id: ConversationId,
    *,
    sender: Sender | None = None,
) -> int:
    if sender is None:
        row = conn.execute(
            "SELECT COUNT(*) AS n FROM raw_memory WHERE conversation_id = ?",
            (conversation_id,),
        ).fetchone()
    else:
        row = conn.execute(
            "SELECT COUNT(*) AS n FROM raw_memory WHERE conversation_id = ? AND sender = ?",
            (conversation_id, Sender(sender).value),
        ).fetchone()
    return int(row["n"]) if row else 0


def update_text(conn: sqlite3.Connection, raw_memory_id: int, new_text: str) -> bool:
    cur = conn.execute(
        "UPDATE raw_memory SET text = ? WHERE id = ?",
        (new_text, raw_memory_id),
    )
    return changes(cur.rowcount) > 0


def delete_from(conn: sqlite3.Connection, conversation_id: ConversationId, cutoff_id: int) -> int:
    cur = conn.execute(
        "DELETE FROM raw_memory WHERE conversation_id = ? AND id >= ?",
        (conversation_id, cutoff_id),
    )
    return changes(cur.rowcount)


def delete_conversation(conn: sqlite3.Connection, conversation_id: ConversationId) -> int:
    cur = conn.execute("DELETE FROM raw_memory WHERE conversation_id = ?", (conversation_id,))
    return changes(cur.rowcount)
