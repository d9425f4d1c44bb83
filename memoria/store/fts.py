from __future__ import annotations

import re
import sqlite3

from .types import CondensedStatus, ConversationId, FtsCandidate

_TOKEN_RE = re.compile(r"\w+")
_FTS_OPERATORS = {"or", "and", "not", "near"}


def expand_query(query: str) -> str:
    """Build an FTS5 MATCH expression that ORs every word of the query.

    Words are quoted so FTS5 never interprets user text as column filters or operators.
    """
    tokens = [token for token in _TOKEN_RE.findall(query) if token.lower() not in _FTS_OPERATORS]
    if not tokens:
        return ""
    seen: set[str] = set()
    terms: list[str] = []
    for token in tokens:
        key = token.lower()
        if key in seen:
            continue
        seen.add(key)
        terms.append(f'"{token}"')
    return " OR ".join(terms)


def index(conn: sqlite3.Connection, rowid: int, summary_text: str) -> None:
    remove(conn, rowid)
    conn.execute(
        "INSERT INTO condensed_memory_fts(rowid, summary_text) VALUES (?, ?)",
        (rowid, summary_text),
    )


def remove(conn: sqlite3.Connection, rowid: int) -> None:
    conn.execute("DELETE FROM condensed_memory_fts WHERE rowid = ?", (rowid,))


def search(
    conn: sqlite3.Connection,
    conversation_id: ConversationId,
    query: str,
    limit: int,
    *,
    before_raw_id: int | None = None,
) -> list[FtsCandidate]:
    expanded = expand_query(query)
    if not expanded or limit <= 0:
        return []
    bound = ""
    params: list[object] = [expanded, conversation_id, CondensedStatus.INDEXED.value]
    if before_raw_id is not None:
        bound = "AND condensed_memory.raw_memory_id < ?"
        params.append(before_raw_id)
    params.append(limit)
    rows = conn.execute(
        f"""
        SELECT condensed_memory.id AS id,
               bm25(condensed_memory_fts) AS rank,
               condensed_memory.timestamp AS timestamp
        FROM condensed_memory_fts
        JOIN condensed_memory ON condensed_memory.id = condensed_memory_fts.rowid
        WHERE condensed_memory_fts MATCH ?
          AND condensed_memory.conversation_id = ?
          AND condensed_memory.status = ?
          {bound}
        ORDER BY rank ASC, condensed_memory.timestamp DESC, condensed_memory.id DESC
        LIMIT ?
        """,
        params,
    ).fetchall()
    return [
        FtsCandidate(id=int(row["id"]), rank=float(row["rank"]), timestamp=int(row["timestamp"]))
        for row in rows
    ]


def rebuild(conn: sqlite3.Connection) -> int:
    conn.execute("DELETE FROM condensed_memory_fts")
    rows = conn.execute(
        "SELECT id, summary_text FROM condensed_memory WHERE status = ?",
        (CondensedStatus.INDEXED.value,),
    ).fetchall()
    for row in rows:
        conn.execute(
            "INSERT INTO condensed_memory_fts(rowid, summary_text) VALUES (?, ?)",
            (row["id"], row["summary_text"]),
        )
    return len(rows)
