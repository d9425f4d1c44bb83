from __future__ import annotations

import math

import pytest

from memoria.errors import DimensionMismatch, ExternalServiceError, InvalidVector
from memoria.semantic import embed_text, pack_vector, unpack_vector, validate_vector
from memoria.store.fts import expand_query
from memoria.store.vectors import score, score_blob


def test_pack_unpack_preserves_values_within_float32_precision() -> None:
    values = [0.1, -0.25, 3.5, 1e-3]

    restored = unpack_vector(pack_vector(values, 4))

    assert restored == pytest.approx(values, rel=1e-6)


def test_validate_vector_rejects_bad_embeddings() -> None:
    with pytest.raises(InvalidVector, match="empty"):
        validate_vector([], 4)
    with pytest.raises(InvalidVector, match="768"):
        validate_vector([0.0] * 768, 512)
    with pytest.raises(InvalidVector, match="non-finite"):
        validate_vector([1.0, math.nan], 2)
    with pytest.raises(InvalidVector):
        unpack_vector(b"\x00\x00\x00")


def test_score_is_cosine_similarity() -> None:
    assert score([1.0, 0.0], [2.0, 0.0]) == pytest.approx(1.0)
    assert score([1.0, 0.0], [0.0, 3.0]) == pytest.approx(0.0)
    assert score([1.0, 0.0], [-1.0, 0.0]) == pytest.approx(-1.0)
    assert score([1.0, 1.0], [1.0, 0.0]) == pytest.approx(1 / math.sqrt(2))
    assert score([0.0, 0.0], [1.0, 0.0]) == 0.0


def test_score_rejects_mismatched_dimensions() -> None:
    with pytest.raises(DimensionMismatch, match="expected 3, got 2"):
        score([1.0, 0.0, 0.0], [1.0, 0.0])
    with pytest.raises(DimensionMismatch):
        score_blob([1.0, 0.0, 0.0], pack_vector([1.0, 0.0], 2))


def test_embed_text_wraps_client_failures() -> None:
    class Broken:
        model = "broken"

        def embed(self, texts):
            raise RuntimeError("model offline")

    class Empty:
        model = "empty"

        def embed(self, texts):
            return []

    with pytest.raises(ExternalServiceError, match="model offline"):
        embed_text(Broken(), "hello")
    with pytest.raises(ExternalServiceError, match="no vectors"):
        embed_text(Empty(), "hello")


def test_expand_query_quotes_and_ors_unique_words() -> None:
    assert expand_query("cat cat: Dog") == '"cat" OR "Dog"'
    assert expand_query("cats or dogs") == '"cats" OR "dogs"'
    assert expand_query("summary_text:secret") == '"summary_text" OR "secret"'
    assert expand_query("!!!") == ""
    assert expand_query("café au lait") == '"café" OR "au" OR "lait"'
    assert expand_query("猫 在 垫子") == '"猫" OR "在" OR "垫子"'
