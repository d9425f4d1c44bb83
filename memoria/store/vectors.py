from __future__ import annotations

import math
import sqlite3
from collections.abc import Sequence

import sqlite_vec

from ..errors import DimensionMismatch
from ..semantic import FLOAT32_BYTES, unpack_vector
from .types import CondensedMemory, CondensedStatus, ConversationId, ScoredMemory


def score(query: Sequence[float], candidate: Sequence[float]) -> float:
    """Cosine similarity between two vectors, clamped to [-1, 1].

    Stored vectors are not assumed to be normalized. A zero vector scores 0.0.
    """
    if len(query) != len(candidate):
        raise DimensionMismatch(len(query), len(candidate))
    dot = 0.0
    query_norm = 0.0
    candidate_norm = 0.0
    for a, b in zip(query, candidate, strict=True):
        dot += a * b
        query_norm += a * a
        candidate_norm += b * b
    if query_norm == 0.0 or candidate_norm == 0.0:
        return 0.0
    similarity = dot / (math.sqrt(query_norm) * math.sqrt(candidate_norm))
    return max(-1.0, min(1.0, similarity))


def score_blob(query: Sequence[float], blob: bytes) -> float:
    return score(query, unpack_vector(blob))


def scan(
    conn: sqlite3.Connection,
    conversation_id: ConversationId,
    query: Sequence[float],
    limit: int,
    *,
    before_raw_id: int | None = None,
) -> list[ScoredMemory]:
    """Score every INDEXED row of a conversation in SQL with sqlite-vec.

    Rows whose stored width differs from the query are skipped by the length filter.
    """
    if limit <= 0 or not query:
        return []
    bound = ""
    params: list[object] = [
        sqlite_vec.serialize_float32(list(query)),
        conversation_id,
        CondensedStatus.INDEXED.value,
        len(query) * FLOAT32_BYTES,
    ]
    if before_raw_id is not None:
        bound = "AND raw_memory_id < ?"
        params.append(before_raw_id)
    params.append(limit)
    rows = conn.execute(
        f"""
        SELECT *, vec_distance_cosine(vector, ?) AS distance
        FROM condensed_memory
        WHERE conversation_id = ?
          AND status = ?
          AND vector IS NOT NULL
          AND length(vector) = ?
          {bound}
        ORDER BY distance ASC, timestamp DESC, id DESC
        LIMIT ?
        """,
        params,
    ).fetchall()
    results: list[ScoredMemory] = []
    for row in rows:
        distance = row["distance"]
        similarity = 0.0 if distance is None else 1.0 - float(distance)
        results.append(
            ScoredMemory(
                memory=CondensedMemory.from_row(row),
                score=max(-1.0, min(1.0, similarity)),
            )
        )
    return results
