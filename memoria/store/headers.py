from __future__ import annotations

import sqlite3

from .types import ConversationHeader, ConversationId, ConversationInfo
from .utils import changes

DEFAULT_CONVERSATION_NAME = "New conversation"


def get(conn: sqlite3.Connection, conversation_id: ConversationId) -> ConversationHeader | None:
    row = conn.execute(
        "SELECT * FROM conversation_header WHERE conversation_id = ?",
        (conversation_id,),
    ).fetchone()
    return ConversationHeader.from_row(row) if row else None


def ensure(
    conn: sqlite3.Connection,
    conversation_id: ConversationId,
    *,
    timestamp: int,
    name: str = DEFAULT_CONVERSATION_NAME,
) -> bool:
    cur = conn.execute(
        """
        INSERT INTO conversation_header(
            conversation_id, name, creation_timestamp, last_update_timestamp
        )
        VALUES (?, ?, ?, ?)
        ON CONFLICT(conversation_id) DO NOTHING
        """,
        (conversation_id, name, timestamp, timestamp),
    )
    return changes(cur.rowcount) > 0


def touch(conn: sqlite3.Connection, conversation_id: ConversationId, timestamp: int) -> None:
    conn.execute(
        """
        UPDATE conversation_header
        SET last_update_timestamp = MAX(last_update_timestamp, ?)
        WHERE conversation_id = ?
        """,
        (timestamp, conversation_id),
    )


def rename(
    conn: sqlite3.Connection, conversation_id: ConversationId, name: str, timestamp: int
) -> bool:
    cur = conn.execute(
        """
        UPDATE conversation_header SET name = ?, last_update_timestamp = ?
        WHERE conversation_id = ?
        """,
        (name, timestamp, conversation_id),
    )
    return changes(cur.rowcount) > 0


def update_field(
    conn: sqlite3.Connection,
    conversation_id: ConversationId,
    field: str,
    value: str | None,
) -> bool:
    if field not in {"response_schema", "system_instruction"}:
        raise ValueError(f"unsupported header field: {field}")
    cur = conn.execute(
        f"UPDATE conversation_header SET {field} = ? WHERE conversation_id = ?",
        (value, conversation_id),
    )
    return changes(cur.rowcount) > 0


def save_token_state(conn: sqlite3.Connection, header: ConversationHeader) -> None:
    conn.execute(
        """
        UPDATE conversation_header
        SET total_token_count = ?,
            token_threshold_one_third_id = ?,
            token_threshold_two_thirds_id = ?,
            context_compaction_required = ?
        WHERE conversation_id = ?
        """,
        (
            header.total_token_count,
            header.token_threshold_one_third_id,
            header.token_threshold_two_thirds_id,
            1 if header.context_compaction_required else 0,
            header.conversation_id,
        ),
    )


def mark_compaction_handled(
    conn: sqlite3.Connection, conversation_id: ConversationId, timestamp: int
) -> bool:
    """Clear a raised compaction flag.

    The one-third watermark becomes the persisted hot window start and both watermarks
    are re-armed, so the next crossings pin them again.
    """
    cur = conn.execute(
        """
        UPDATE conversation_header
        SET hot_window_start_id = CASE
                WHEN context_compaction_required = 1
                THEN COALESCE(token_threshold_one_third_id, hot_window_start_id)
                ELSE hot_window_start_id
            END,
            token_threshold_one_third_id = CASE
                WHEN context_compaction_required = 1 THEN NULL
                ELSE token_threshold_one_third_id
            END,
            token_threshold_two_thirds_id = CASE
                WHEN context_compaction_required = 1 THEN NULL
                ELSE token_threshold_two_thirds_id
            END,
            context_compaction_required = 0,
            compaction_handled_at = ?
        WHERE conversation_id = ?
        """,
        (timestamp, conversation_id),
    )
    return changes(cur.rowcount) > 0


def list_conversations(conn: sqlite3.Connection) -> list[ConversationInfo]:
    rows = conn.execute(
        """
        SELECT conversation_header.conversation_id AS conversation_id,
               conversation_header.name AS name,
               COALESCE(MAX(raw_memory.timestamp), conversation_header.creation_timestamp)
                   AS last_timestamp
        FROM conversation_header
        LEFT JOIN raw_memory ON raw_memory.conversation_id = conversation_header.conversation_id
        GROUP BY conversation_header.conversation_id
        ORDER BY last_timestamp DESC
        """
    ).fetchall()
    return [
        ConversationInfo(
            conversation_id=ConversationId(row["conversation_id"]),
            name=str(row["name"]),
            last_timestamp=int(row["last_timestamp"]),
        )
        for row in rows
    ]


def delete(conn: sqlite3.Connection, conversation_id: ConversationId) -> bool:
    cur = conn.execute(
        "DELETE FROM conversation_header WHERE conversation_id = ?",
        (conversation_id,),
    )
    return changes(cur.rowcount) > 0
