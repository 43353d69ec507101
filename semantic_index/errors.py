"""
Error taxonomy for the semantic code index.

Span-level and entry-level failures are isolated by the caller; none of
these should abort a whole ingestion pass.
"""

from __future__ import annotations

from typing import Optional


class SemanticIndexError(Exception):
    """Base class for every error raised by the semantic index."""


class NotFound(SemanticIndexError):
    """Raised when querying or removing an unknown file or span."""

    def __init__(self, path: str) -> None:
        super().__init__(f"Not indexed: {path}")
        self.path = path


class ComputeFailed(SemanticIndexError):
    """Raised when the embedding function fails.  Never cached."""

    def __init__(self, reason: str) -> None:
        super().__init__(f"Embedding computation failed: {reason}")
        self.reason = reason


class IndexCorrupt(SemanticIndexError):
    """Raised on an internal invariant violation for a single entry."""

    def __init__(self, detail: str, entry_id: Optional[str] = None) -> None:
        super().__init__(detail)
        self.entry_id = entry_id


class ModelVersionMismatch(SemanticIndexError):
    """Raised when a vector was produced by a different embedding model."""

    def __init__(self, expected: str, actual: str) -> None:
        super().__init__(
            f"Embedding model mismatch: index uses '{expected}', got '{actual}'"
        )
        self.expected = expected
        self.actual = actual
