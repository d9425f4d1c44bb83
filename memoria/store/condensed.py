from __future__ import annotations

import sqlite3
from collections.abc import Sequence

from ..semantic import pack_vector
from . import fts
from .types import CondensedMemory, CondensedStatus, ConversationId
from .utils import changes


def create_placeholder(
    conn: sqlite3.Connection,
    *,
    raw_memory_id: int,
    conversation_id: ConversationId,
    timestamp: int,
) -> int:
    row = conn.execute(
        """
        INSERT INTO condensed_memory(
            raw_memory_id, conversation_id, summary_text, status, timestamp
        )
        VALUES (?, ?, '', ?, ?)
        ON CONFLICT(raw_memory_id) DO UPDATE SET raw_memory_id = excluded.raw_memory_id
        RETURNING id
        """,
        (raw_memory_id, conversation_id, CondensedStatus.NEW.value, timestamp),
    ).fetchone()
    if row is None:
        raise RuntimeError("Failed to create condensed memory placeholder")
    return int(row["id"])


def get(conn: sqlite3.Connection, condensed_id: int) -> CondensedMemory | None:
    row = conn.execute("SELECT * FROM condensed_memory WHERE id = ?", (condensed_id,)).fetchone()
    return CondensedMemory.from_row(row) if row else None


def get_by_raw_memory_id(conn: sqlite3.Connection, raw_memory_id: int) -> CondensedMemory | None:
    row = conn.execute(
        "SELECT * FROM condensed_memory WHERE raw_memory_id = ?",
        (raw_memory_id,),
    ).fetchone()
    return CondensedMemory.from_row(row) if row else None


def get_many(conn: sqlite3.Connection, condensed_ids: Sequence[int]) -> list[CondensedMemory]:
    if not condensed_ids:
        return []
    placeholders = ",".join(["?"] * len(condensed_ids))
    rows = conn.execute(
        f"SELECT * FROM condensed_memory WHERE id IN ({placeholders})",
        [int(value) for value in condensed_ids],
    ).fetchall()
    return [CondensedMemory.from_row(row) for row in rows]


def mark_indexed(
    conn: sqlite3.Connection,
    condensed_id: int,
    *,
    summary: str,
    vector: Sequence[float],
    dim: int,
) -> bool:
    """Store summary and vector, flip the row to INDEXED and index the summary text.

    Returns False when the row no longer exists (deleted while the pipeline ran).
    Raises InvalidVector before touching the row, so a bad vector leaves it NEW.
    """
    blob = pack_vector(vector, dim)
    summary = summary.strip()
    if not summary:
        raise ValueError("summary is required to index a condensed memory")
    cur = conn.execute(
        """
        UPDATE condensed_memory
        SET summary_text = ?,
            vector = ?,
            status = ?,
            last_error = NULL,
            next_attempt_at = 0
        WHERE id = ?
        """,
        (summary, blob, CondensedStatus.INDEXED.value, condensed_id),
    )
    if changes(cur.rowcount) == 0:
        return False
    fts.index(conn, condensed_id, summary)
    return True


def pending(
    conn: sqlite3.Connection,
    *,
    due_before: int | None = None,
    max_attempts: int | None = None,
    limit: int | None = None,
) -> list[CondensedMemory]:
    where = ["status = ?"]
    params: list[object] = [CondensedStatus.NEW.value]
    if due_before is not None:
        where.append("next_attempt_at <= ?")
        params.append(due_before)
    if max_attempts is not None:
        where.append("attempt_count < ?")
        params.append(max_attempts)
    limit_clause = ""
    if limit is not None:
        limit_clause = "LIMIT ?"
        params.append(limit)
    rows = conn.execute(
        f"""
        SELECT * FROM condensed_memory
        WHERE {" AND ".join(where)}
        ORDER BY timestamp ASC, id ASC
        {limit_clause}
        """,
        params,
    ).fetchall()
    return [CondensedMemory.from_row(row) for row in rows]


def pending_count(conn: sqlite3.Connection, conversation_id: ConversationId | None = None) -> int:
    if conversation_id is None:
        row = conn.execute(
            "SELECT COUNT(*) AS n FROM condensed_memory WHERE status = ?",
            (CondensedStatus.NEW.value,),
        ).fetchone()
    else:
        row = conn.execute(
            "SELECT COUNT(*) AS n FROM condensed_memory WHERE status = ? AND conversation_id = ?",
            (CondensedStatus.NEW.value, conversation_id),
        ).fetchone()
    return int(row["n"]) if row else 0


def status_counts(conn: sqlite3.Connection) -> dict[str, int]:
    counts = {status.value: 0 for status in CondensedStatus}
    rows = conn.execute(
        "SELECT status, COUNT(*) AS n FROM condensed_memory GROUP BY status"
    ).fetchall()
    for row in rows:
        counts[str(row["status"])] = int(row["n"])
    row = conn.execute(
        "SELECT COUNT(*) AS n FROM condensed_memory WHERE status = ? AND attempt_count > 0",
        (CondensedStatus.NEW.value,),
    ).fetchone()
    counts["retrying"] = int(row["n"]) if row else 0
    return counts


def record_failure(
    conn: sqlite3.Connection,
    condensed_id: int,
    *,
    error: str,
    next_attempt_at: int,
    min_attempt_count: int = 0,
) -> int:
    row = conn.execute(
        """
        UPDATE condensed_memory
        SET attempt_count = MAX(attempt_count + 1, ?),
            last_error = ?,
            next_attempt_at = ?
        WHERE id = ? AND status = ?
        RETURNING attempt_count
        """,
        (
            min_attempt_count,
            error[:2000],
            next_attempt_at,
            condensed_id,
            CondensedStatus.NEW.value,
        ),
    ).fetchone()
    return int(row["attempt_count"]) if row else 0


def reset_attempts(conn: sqlite3.Connection, conversation_id: ConversationId | None = None) -> int:
    params: list[object] = [CondensedStatus.NEW.value]
    where = "status = ? AND attempt_count > 0"
    if conversation_id is not None:
        where += " AND conversation_id = ?"
        params.append(conversation_id)
    cur = conn.execute(
        f"""
        UPDATE condensed_memory
        SET attempt_count = 0, next_attempt_at = 0, last_error = NULL
        WHERE {where}
        """,
        params,
    )
    return changes(cur.rowcount)


def count(conn: sqlite3.Connection, conversation_id: ConversationId) -> int:
    row = conn.execute(
        "SELECT COUNT(*) AS n FROM condensed_memory WHERE conversation_id = ?",
        (conversation_id,),
    ).fetchone()
    return int(row["n"]) if row else 0


def delete_from(conn: sqlite3.Connection, conversation_id: ConversationId, cutoff_id: int) -> int:
    cur = conn.execute(
        "DELETE FROM condensed_memory WHERE conversation_id = ? AND raw_memory_id >= ?",
        (conversation_id, cutoff_id),
    )
    return changes(cur.rowcount)


def delete_conversation(conn: sqlite3.Connection, conversation_id: ConversationId) -> int:
    cur = conn.execute(
        "DELETE FROM condensed_memory WHERE conversation_id = ?",
        (conversation_id,),
    )
    return changes(cur.rowcount)
