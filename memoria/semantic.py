from __future__ import annotations

import math
import struct
from collections.abc import Iterable, Sequence
from typing import Protocol

import sqlite_vec

from .config import MemoriaConfig, load_config
from .errors import ExternalServiceError, InvalidVector

FLOAT32_BYTES = 4


class Embedder(Protocol):
    model: str

    def embed(self, texts: Iterable[str]) -> list[list[float]]: ...


class _FastEmbedClient:
    def __init__(self, model: str) -> None:
        try:
            from fastembed import TextEmbedding
        except Exception as exc:  # pragma: no cover
            raise RuntimeError("fastembed is required for semantic recall") from exc
        self.model = model
        self._embedder = TextEmbedding(model_name=model)

    def embed(self, texts: Iterable[str]) -> list[list[float]]:
        embeddings = self._embedder.embed(list(texts))
        return [[float(value) for value in vec] for vec in embeddings]


_CLIENT: _FastEmbedClient | None = None


def get_embedding_client(config: MemoriaConfig | None = None) -> Embedder | None:
    global _CLIENT
    if _CLIENT is not None:
        return _CLIENT
    cfg = config or load_config()
    if cfg.embedding_disabled:
        return None
    try:
        _CLIENT = _FastEmbedClient(model=cfg.embedding_model)
    except Exception:
        _CLIENT = None
    return _CLIENT


def embed_text(embedder: Embedder, text: str) -> list[float]:
    """Embed a single text, wrapping any client failure as ExternalServiceError."""
    try:
        vectors = embedder.embed([text])
    except Exception as exc:
        raise ExternalServiceError(f"embedder failed: {exc}") from exc
    if not vectors:
        raise ExternalServiceError("embedder returned no vectors")
    return [float(value) for value in vectors[0]]


def validate_vector(values: Sequence[float], dim: int) -> None:
    if not values:
        raise InvalidVector("vector is empty")
    if len(values) != dim:
        raise InvalidVector(f"vector has {len(values)} dimensions, store is configured for {dim}")
    if not all(math.isfinite(value) for value in values):
        raise InvalidVector("vector contains non-finite values")


def pack_vector(values: Sequence[float], dim: int) -> bytes:
    """Pack an embedding into the on-disk float32 blob after validating it."""
    validate_vector(values, dim)
    return sqlite_vec.serialize_float32(list(values))


def unpack_vector(blob: bytes) -> list[float]:
    if len(blob) % FLOAT32_BYTES:
        raise InvalidVector(f"vector blob length {len(blob)} is not a multiple of 4")
    count = len(blob) // FLOAT32_BYTES
    return list(struct.unpack(f"{count}f", blob))
