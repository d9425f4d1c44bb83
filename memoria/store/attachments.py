from __future__ import annotations

import mimetypes
import sqlite3

from .types import FileAttachment, MessageFile
from .utils import changes

DEFAULT_FILE_TYPE = "application/octet-stream"


def _guess_type(attachment: FileAttachment) -> str:
    if attachment.file_type:
        return attachment.file_type
    guessed, _ = mimetypes.guess_type(attachment.file_name)
    return guessed or DEFAULT_FILE_TYPE


def save(conn: sqlite3.Connection, raw_memory_id: int, attachment: FileAttachment) -> int:
    cur = conn.execute(
        """
        INSERT INTO message_files(raw_memory_id, file_name, file_type, content_base64)
        VALUES (?, ?, ?, ?)
        """,
        (raw_memory_id, attachment.file_name, _guess_type(attachment), attachment.content_base64),
    )
    if cur.lastrowid is None:
        raise RuntimeError("Failed to insert message file")
    return int(cur.lastrowid)


def for_memory(conn: sqlite3.Connection, raw_memory_id: int) -> list[MessageFile]:
    rows = conn.execute(
        "SELECT * FROM message_files WHERE raw_memory_id = ? ORDER BY id ASC",
        (raw_memory_id,),
    ).fetchall()
    return [
        MessageFile(
            id=int(row["id"]),
            raw_memory_id=int(row["raw_memory_id"]),
            file_name=str(row["file_name"]),
            file_type=str(row["file_type"]),
            content_base64=str(row["content_base64"]),
        )
        for row in rows
    ]


def delete(conn: sqlite3.Connection, file_id: int) -> bool:
    cur = conn.execute("DELETE FROM message_files WHERE id = ?", (file_id,))
    return changes(cur.rowcount) > 0
