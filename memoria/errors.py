from __future__ import annotations


class MemoriaError(Exception):
    """Base class for memory engine failures."""


class StorageError(MemoriaError):
    """A SQLite statement or transaction failed; the operation did not commit."""


class ExternalServiceError(MemoriaError):
    """The summarizer, embedder or model endpoint failed or returned nothing usable."""


class InvalidVector(MemoriaError, ValueError):
    """An embedding is empty, non-finite, or does not match the configured dimensionality."""


class DimensionMismatch(MemoriaError, ValueError):
    """Two vectors being compared have different lengths."""

    def __init__(self, expected: int, actual: int) -> None:
        super().__init__(f"vector dimensionality mismatch: expected {expected}, got {actual}")
        self.expected = expected
        self.actual = actual
