from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from ..errors import DimensionMismatch, ExternalServiceError, StorageError
from ..semantic import Embedder, embed_text, get_embedding_client
from . import condensed as store_condensed
from . import fts as store_fts
from . import vectors as store_vectors
from .types import ScoredMemory, conversation_id

if TYPE_CHECKING:
    from ._store import MemoryStore

logger = logging.getLogger(__name__)


def prefilter_breadth(store: MemoryStore, k: int) -> int:
    cfg = store.config
    return max(cfg.retrieval_breadth_factor * k, cfg.retrieval_min_breadth, k)


def _ranked(results: list[ScoredMemory], k: int) -> list[ScoredMemory]:
    ordered = sorted(
        results,
        key=lambda item: (item.score, item.memory.timestamp, item.memory.id),
        reverse=True,
    )
    return ordered[:k]


def retrieve_relevant(
    store: MemoryStore,
    conversation: str,
    query: str,
    k: int,
    *,
    embedder: Embedder | None = None,
    before_raw_id: int | None = None,
) -> list[ScoredMemory]:
    """Full-text prefilter over condensed summaries, then cosine rerank against the query.

    Embedder and storage failures (including the query deadline) degrade to an empty
    list. A stored vector whose width differs from the query raises DimensionMismatch.
    """
    if k <= 0:
        return []
    cid = conversation_id(conversation)
    cfg = store.config
    client = embedder or get_embedding_client(cfg)
    if client is None:
        logger.warning("retrieval skipped: no embedding client", extra={"conversation_id": cid})
        return []
    try:
        query_vector = embed_text(client, query)
    except ExternalServiceError as exc:
        logger.warning("retrieval skipped: query embedding failed: %s", exc)
        return []
    if len(query_vector) != cfg.embedding_dim:
        raise DimensionMismatch(cfg.embedding_dim, len(query_vector))

    breadth = prefilter_breadth(store, k)
    try:
        with store.read(timeout_ms=cfg.retrieval_timeout_ms) as conn:
            candidates = store_fts.search(
                conn, cid, query, breadth, before_raw_id=before_raw_id
            )
            memories = store_condensed.get_many(conn, [item.id for item in candidates])
            if not candidates and cfg.retrieval_full_scan_fallback:
                scanned = store_vectors.scan(
                    conn, cid, query_vector, breadth, before_raw_id=before_raw_id
                )
                return _ranked(scanned, k)
    except StorageError as exc:
        logger.warning("retrieval degraded to empty result: %s", exc)
        return []

    scored: list[ScoredMemory] = []
    for memory in memories:
        if memory.vector is None:
            continue
        scored.append(
            ScoredMemory(memory=memory, score=store_vectors.score_blob(query_vector, memory.vector))
        )
    return _ranked(scored, k)
