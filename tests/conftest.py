from __future__ import annotations

import hashlib
import re
from collections.abc import Callable, Iterable, Iterator
from pathlib import Path

import pytest

from memoria import semantic
from memoria.config import MemoriaConfig
from memoria.store import MemoryStore

_WORD_RE = re.compile(r"\w+")


@pytest.fixture(autouse=True)
def _isolate_memoria_env(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.setenv("MEMORIA_CONFIG", str(tmp_path / "config.json"))
    monkeypatch.setenv("MEMORIA_DB", str(tmp_path / "default.sqlite"))
    monkeypatch.setenv("MEMORIA_EMBEDDING_DISABLED", "1")
    monkeypatch.setattr(semantic, "_CLIENT", None)


class HashEmbedder:
    """Deterministic bag-of-words embedder: each word bumps one hashed dimension."""

    model = "hash-test"

    def __init__(self, dim: int = 16) -> None:
        self.dim = dim
        self.calls = 0

    def embed(self, texts: Iterable[str]) -> list[list[float]]:
        self.calls += 1
        vectors = []
        for text in texts:
            vector = [0.0] * self.dim
            for word in _WORD_RE.findall(text.lower()):
                digest = hashlib.sha1(word.encode("utf-8")).hexdigest()
                vector[int(digest, 16) % self.dim] += 1.0
            vectors.append(vector)
        return vectors


class EchoSummarizer:
    def __init__(self) -> None:
        self.calls = 0

    def summarize(self, text: str) -> str:
        self.calls += 1
        return text


def _test_config(**overrides: object) -> MemoriaConfig:
    values: dict[str, object] = {
        "embedding_dim": 16,
        "embedding_disabled": True,
        "condense_backoff_s": 0.01,
        "condense_backoff_max_s": 0.05,
        "condense_sweep_interval_s": 1.0,
    }
    values.update(overrides)
    return MemoriaConfig(**values)  # type: ignore[arg-type]


@pytest.fixture
def config() -> MemoriaConfig:
    return _test_config()


@pytest.fixture
def make_store(tmp_path: Path) -> Iterator[Callable[..., MemoryStore]]:
    opened: list[MemoryStore] = []

    def factory(name: str = "mem.sqlite", **overrides: object) -> MemoryStore:
        store = MemoryStore(tmp_path / name, config=_test_config(**overrides))
        opened.append(store)
        return store

    yield factory
    for store in opened:
        store.close()


@pytest.fixture
def store(make_store: Callable[..., MemoryStore]) -> MemoryStore:
    return make_store()


@pytest.fixture
def embedder() -> HashEmbedder:
    return HashEmbedder(16)


@pytest.fixture
def summarizer() -> EchoSummarizer:
    return EchoSummarizer()
