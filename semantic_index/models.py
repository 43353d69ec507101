"""
Shared data types for the semantic code index.

ProjectFile and CodeSpan are owned by the Span Store, CodeEmbedding by
the Embedding Cache, and IndexEntry by the Vector Index.  An IndexEntry
refers to its embedding only through ``embedding_id``.
"""

from __future__ import annotations

import hashlib
import os
from dataclasses import dataclass, field
from enum import Enum
from typing import Iterable, Optional, Sequence, Union

import numpy as np

from .errors import IndexCorrupt

# ---------------------------------------------------------------------------
# Span kinds
# ---------------------------------------------------------------------------

class SpanKind(str, Enum):
    FUNCTION = "function"
    CLASS = "class"
    METHOD = "method"
    IMPORT = "import"
    OTHER = "other"

    @classmethod
    def coerce(cls, value: Union[str, "SpanKind"]) -> "SpanKind":
        """Map *value* onto a known kind; unknown strings become OTHER."""
        if isinstance(value, SpanKind):
            return value
        try:
            return cls(str(value).lower())
        except ValueError:
            return cls.OTHER


# ---------------------------------------------------------------------------
# Identity helpers
# ---------------------------------------------------------------------------

def content_hash(content: str) -> str:
    """SHA-256 of *content*, truncated to 16 hex chars."""
    return hashlib.sha256(content.encode("utf-8", errors="replace")).hexdigest()[:16]


def embedding_id_for(content: str, model_version: str) -> str:
    """
    Stable embedding id for ``(content, model_version)``.

    Identical content embedded by the same model always yields the same id.
    """
    key = f"{model_version}\0{content}"
    return hashlib.sha256(key.encode("utf-8", errors="replace")).hexdigest()[:16]


def entry_id_for(embedding_id: str, file_path: str, start_line: int) -> str:
    """Occurrence id used as the Vector Index key."""
    return f"{embedding_id}:{file_path}:{start_line}"


def as_vector(values: Sequence[float]) -> np.ndarray:
    """Return *values* as a 1-D float32 array."""
    arr = np.asarray(values, dtype=np.float32)
    if arr.ndim != 1 or arr.size == 0:
        raise ValueError(f"Expected a non-empty 1-D vector, got shape {arr.shape}")
    return arr


# ---------------------------------------------------------------------------
# Records
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ProjectFile:
    """Stored metadata for a single indexed file."""

    path: str
    size: int = 0
    modified_at: float = 0.0
    file_type: str = ""
    last_seen_version: int = 0
    fully_indexed: bool = True
    ai_relevance: Optional[float] = None

    @property
    def name(self) -> str:
        return os.path.basename(self.path)


@dataclass(frozen=True)
class CodeSpan:
    """
    A contiguous, named unit of source code.

    Lines are 1-based and half-open: ``start_line <= line < end_line``.
    """

    file_path: str
    start_line: int
    end_line: int
    span_kind: SpanKind
    content: str
    dependencies: tuple[str, ...] = ()
    name: str = ""
    language: str = ""

    def __post_init__(self) -> None:
        if self.start_line < 1 or self.start_line >= self.end_line:
            raise ValueError(
                f"Invalid span bounds {self.start_line}..{self.end_line} "
                f"in {self.file_path}"
            )
        object.__setattr__(self, "span_kind", SpanKind.coerce(self.span_kind))
        # ordered set: keep first occurrence
        object.__setattr__(
            self, "dependencies", tuple(dict.fromkeys(self.dependencies))
        )


def check_span_order(file_path: str, spans: Iterable[CodeSpan]) -> list[CodeSpan]:
    """
    Return *spans* sorted by ``start_line`` after validating them.

    Raises
    ------
    ValueError
        If a span belongs to another file or two spans overlap.
    """
    ordered = sorted(spans, key=lambda s: (s.start_line, s.end_line))
    prev: Optional[CodeSpan] = None
    for span in ordered:
        if span.file_path != file_path:
            raise ValueError(f"Span for {span.file_path} submitted under {file_path}")
        if prev is not None and span.start_line < prev.end_line:
            raise ValueError(
                f"Overlapping spans in {file_path}: "
                f"{prev.start_line}-{prev.end_line} and {span.start_line}-{span.end_line}"
            )
        prev = span
    return ordered


@dataclass(eq=False)
class CodeEmbedding:
    """A span's vector under one embedding model."""

    id: str
    span: Optional[CodeSpan]
    vector: np.ndarray
    language: str = ""
    model_version: str = ""


@dataclass(frozen=True, eq=False)
class IndexEntry:
    """The unit stored in the Vector Index."""

    entry_id: str
    embedding_id: str
    vector: np.ndarray
    file_path: str
    span_kind: SpanKind
    last_seen_version: int
    start_line: int = 1


# ---------------------------------------------------------------------------
# Per-file ingestion state machine
# ---------------------------------------------------------------------------

class FileState(str, Enum):
    UNSEEN = "unseen"
    INDEXED = "indexed"
    STALE = "stale"
    REMOVED = "removed"


_TRANSITIONS: dict[FileState, frozenset[FileState]] = {
    FileState.UNSEEN: frozenset({FileState.STALE, FileState.REMOVED}),
    FileState.INDEXED: frozenset({FileState.STALE, FileState.REMOVED}),
    # STALE -> STALE re-runs a pass that was interrupted
    FileState.STALE: frozenset({FileState.INDEXED, FileState.STALE, FileState.REMOVED}),
    FileState.REMOVED: frozenset({FileState.STALE, FileState.REMOVED}),
}


def transition(path: str, current: FileState, target: FileState) -> FileState:
    """Validate a state change for *path* and return *target*."""
    if target not in _TRANSITIONS[current]:
        raise IndexCorrupt(
            f"Illegal ingestion transition for {path}: "
            f"{current.value} -> {target.value}"
        )
    return target


# ---------------------------------------------------------------------------
# Change notifications and status
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class FileChanged:
    path: str
    spans: tuple[CodeSpan, ...]
    size: int = 0
    modified_at: float = 0.0
    file_type: str = ""

    def __post_init__(self) -> None:
        object.__setattr__(self, "spans", tuple(self.spans))


@dataclass(frozen=True)
class FileRemoved:
    path: str


ChangeEvent = Union[FileChanged, FileRemoved]


@dataclass
class IndexStatus:
    files_indexed: int
    spans_indexed: int
    last_ingestion_version: int
    incomplete_files: list[str] = field(default_factory=list)
