from __future__ import annotations

import os
import sqlite3
from pathlib import Path

import sqlite_vec

DEFAULT_DB_PATH = Path.home() / ".memoria.sqlite"
SCHEMA_VERSION = 1


def resolve_db_path(db_path: Path | str | None = None) -> Path:
    if db_path:
        return Path(db_path).expanduser()
    return Path(os.getenv("MEMORIA_DB") or DEFAULT_DB_PATH).expanduser()


def sqlite_vec_version(conn: sqlite3.Connection) -> str | None:
    try:
        row = conn.execute("select vec_version()").fetchone()
    except sqlite3.Error:
        return None
    if not row or row[0] is None:
        return None
    return str(row[0])


def _load_sqlite_vec(conn: sqlite3.Connection) -> None:
    """Load sqlite-vec into ``conn``; memoria refuses to open a store without it."""
    try:
        conn.enable_load_extension(True)
    except AttributeError as exc:
        raise RuntimeError(
            "memoria needs sqlite-vec, but this Python's sqlite3 module cannot load "
            "extensions. Use an interpreter built with extension loading enabled."
        ) from exc
    try:
        sqlite_vec.load(conn)
        if sqlite_vec_version(conn) is None:
            raise RuntimeError("sqlite-vec loaded but vec_version() returned nothing")
    except Exception as exc:  # pragma: no cover
        message = (
            f"memoria could not load sqlite-vec ({exc}). Reinstall it with "
            "`pip install --force-reinstall sqlite-vec`; stored vectors and "
            "MEMORIA_RETRIEVAL_FULL_SCAN_FALLBACK both depend on it."
        )
        if "ELFCLASS32" in str(exc):
            message = (
                "memoria could not load sqlite-vec: the installed vec0 library is 32-bit "
                "(ELFCLASS32). Install a 64-bit build of sqlite-vec for this platform."
            )
        raise RuntimeError(message) from exc
    finally:
        try:
            conn.enable_load_extension(False)
        except AttributeError:
            pass


def connect(db_path: Path | str, check_same_thread: bool = True) -> sqlite3.Connection:
    path = Path(db_path).expanduser()
    path.parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(path, check_same_thread=check_same_thread, timeout=5.0)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys = ON")
    try:
        conn.execute("PRAGMA journal_mode = WAL")
    except sqlite3.OperationalError:
        conn.execute("PRAGMA journal_mode = DELETE")
    conn.execute("PRAGMA synchronous = NORMAL")
    _load_sqlite_vec(conn)
    return conn


def _schema_version(conn: sqlite3.Connection) -> int:
    row = conn.execute("PRAGMA user_version").fetchone()
    return int(row[0]) if row else 0


def initialize_schema(conn: sqlite3.Connection) -> None:
    if _schema_version(conn) >= SCHEMA_VERSION:
        return
    _initialize_schema_v1(conn)
    conn.execute(f"PRAGMA user_version = {SCHEMA_VERSION}")
    conn.commit()


def _initialize_schema_v1(conn: sqlite3.Connection) -> None:
    conn.executescript(
        """
        CREATE TABLE IF NOT EXISTS conversation_header (
            conversation_id TEXT PRIMARY KEY,
            name TEXT NOT NULL,
            creation_timestamp INTEGER NOT NULL,
            last_update_timestamp INTEGER NOT NULL,
            total_token_count INTEGER NOT NULL DEFAULT 0,
            token_threshold_one_third_id INTEGER,
            token_threshold_two_thirds_id INTEGER,
            context_compaction_required INTEGER NOT NULL DEFAULT 0,
            compaction_handled_at INTEGER,
            hot_window_start_id INTEGER,
            response_schema TEXT,
            system_instruction TEXT
        );
        CREATE INDEX IF NOT EXISTS idx_conversation_header_updated
            ON conversation_header(last_update_timestamp DESC);

        CREATE TABLE IF NOT EXISTS raw_memory (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            conversation_id TEXT NOT NULL,
            sender TEXT NOT NULL CHECK (sender IN ('user', 'model')),
            text TEXT NOT NULL,
            timestamp INTEGER NOT NULL
        );
        CREATE INDEX IF NOT EXISTS idx_raw_memory_conversation_ts
            ON raw_memory(conversation_id, timestamp DESC, id DESC);

        CREATE TABLE IF NOT EXISTS condensed_memory (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            raw_memory_id INTEGER NOT NULL UNIQUE
                REFERENCES raw_memory(id) ON DELETE CASCADE,
            conversation_id TEXT NOT NULL,
            summary_text TEXT NOT NULL DEFAULT '',
            vector BLOB,
            status TEXT NOT NULL DEFAULT 'NEW' CHECK (status IN ('NEW', 'INDEXED')),
            timestamp INTEGER NOT NULL,
            attempt_count INTEGER NOT NULL DEFAULT 0,
            next_attempt_at INTEGER NOT NULL DEFAULT 0,
            last_error TEXT,
            CHECK (status = 'NEW' OR (summary_text <> '' AND vector IS NOT NULL))
        );
        CREATE INDEX IF NOT EXISTS idx_condensed_memory_conversation
            ON condensed_memory(conversation_id, status);
        CREATE INDEX IF NOT EXISTS idx_condensed_memory_pending
            ON condensed_memory(status, next_attempt_at);

        CREATE VIRTUAL TABLE IF NOT EXISTS condensed_memory_fts USING fts5(summary_text);

        DROP TRIGGER IF EXISTS condensed_memory_ad;
        CREATE TRIGGER condensed_memory_ad AFTER DELETE ON condensed_memory BEGIN
            DELETE FROM condensed_memory_fts WHERE rowid = old.id;
        END;

        CREATE TABLE IF NOT EXISTS message_files (
            id INTEGER PRIMARY KEY,
            raw_memory_id INTEGER NOT NULL REFERENCES raw_memory(id) ON DELETE CASCADE,
            file_name TEXT NOT NULL,
            file_type TEXT NOT NULL,
            content_base64 TEXT NOT NULL
        );
        CREATE INDEX IF NOT EXISTS idx_message_files_raw_memory ON message_files(raw_memory_id);
        """
    )
