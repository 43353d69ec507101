"""
Query Engine: turns a free-text or code query into ranked code spans.

The query is embedded with the same model as the index (through the
Embedding Cache), the Vector Index is over-fetched, scope and kind
filters are applied to the candidates, and the remainder is re-ranked by

    similarity * w_sim + recency * w_recency + dependency_overlap * w_dep

Recency is measured against the newest file in the Span Store rather
than the wall clock, so a fixed index state always ranks the same way.

Failures never raise out of :meth:`QueryEngine.search_code`; they come
back as an empty :class:`SearchResponse` carrying a reason code.
"""

from __future__ import annotations

import fnmatch
import logging
import re
import time
from dataclasses import dataclass, field, replace
from typing import Callable, Iterable, Iterator, Optional, Sequence, Union

import numpy as np

from ..errors import ComputeFailed, IndexCorrupt, NotFound
from ..models import (
    IndexStatus,
    ProjectFile,
    SpanKind,
    embedding_id_for,
    entry_id_for,
)
from .embedding_cache import EmbeddingCache
from .span_store import SpanStore
from .vector_index import SearchFilter, VectorIndex

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

DEFAULT_OVERFETCH_FACTOR = 4
DEFAULT_HALF_LIFE_SECONDS = 7 * 24 * 3600.0

REASON_EMPTY_QUERY = "empty_query"
REASON_MODEL_MISMATCH = "model_version_mismatch"
REASON_EMBEDDING_FAILED = "embedding_failed"
REASON_INDEX_ERROR = "index_error"

_IDENTIFIER_RE = re.compile(r"[A-Za-z_][A-Za-z0-9_]*")

ProjectScope = Union[str, Sequence[str], None]


# ---------------------------------------------------------------------------
# Data classes
# ---------------------------------------------------------------------------

@dataclass
class RankingWeights:
    """Blend weights for the combined ranking score."""

    similarity: float = 0.8
    recency: float = 0.1
    dependency: float = 0.1

    def __post_init__(self) -> None:
        for name in ("similarity", "recency", "dependency"):
            if getattr(self, name) < 0:
                raise ValueError(f"Ranking weight '{name}' must be >= 0")


@dataclass
class SearchResult:
    """
    A single ranked search hit.

    Attributes
    ----------
    similarity:
        Cosine similarity from the Vector Index, in ``[-1, 1]``.
    recency:
        Decay factor of the file's ``modified_at``, in ``(0, 1]``.
    dependency_overlap:
        Share of the query context the span references, in ``[0, 1]``.
    score:
        Weighted blend of the three signals; results sort on it.
    """

    entry_id: str
    embedding_id: str
    file_path: str
    start_line: int
    end_line: int
    span_kind: SpanKind
    name: str
    content: str
    language: str
    dependencies: tuple[str, ...]
    similarity: float
    recency: float
    dependency_overlap: float
    score: float


@dataclass
class SearchResponse:
    """Ordered results plus a reason code when the query failed."""

    results: list[SearchResult] = field(default_factory=list)
    reason: Optional[str] = None

    def __iter__(self) -> Iterator[SearchResult]:
        return iter(self.results)

    def __len__(self) -> int:
        return len(self.results)

    def __getitem__(self, idx: int) -> SearchResult:
        return self.results[idx]

    @property
    def ok(self) -> bool:
        return self.reason is None


# ---------------------------------------------------------------------------
# Ranking signals
# ---------------------------------------------------------------------------

def recency_decay(modified_at: float, reference: float, half_life: float) -> float:
    """Exponential decay: 1.0 at *reference*, 0.5 one *half_life* earlier."""
    if half_life <= 0:
        return 1.0
    age = max(0.0, reference - modified_at)
    return 0.5 ** (age / half_life)


def dependency_overlap(query_context: Iterable[str], dependencies: Iterable[str]) -> float:
    """Fraction of *query_context* symbols that appear in *dependencies*."""
    context = set(query_context)
    if not context:
        return 0.0
    return len(context & set(dependencies)) / len(context)


def query_identifiers(text: str) -> set[str]:
    """Identifier-like tokens of *text*, used as the default query context."""
    return set(_IDENTIFIER_RE.findall(text))


def scope_matcher(project_scope: ProjectScope) -> Optional[Callable[[str], bool]]:
    """
    Build a path predicate for *project_scope*.

    Each pattern matches a path equal to it, a path under it as a
    directory prefix, or a path matching it as a glob.
    """
    if project_scope is None:
        return None
    patterns = [project_scope] if isinstance(project_scope, str) else list(project_scope)
    patterns = [p.replace("\\", "/").rstrip("/") for p in patterns if p]
    if not patterns:
        return None

    def _match(path: str) -> bool:
        path = path.replace("\\", "/")
        for pattern in patterns:
            if path == pattern or path.startswith(pattern + "/"):
                return True
            if fnmatch.fnmatch(path, pattern):
                return True
        return False

    return _match


# ---------------------------------------------------------------------------
# QueryEngine
# ---------------------------------------------------------------------------

class QueryEngine:
    """
    Ranked semantic search over the shared index.

    Parameters
    ----------
    index:
        Shared :class:`VectorIndex`.
    span_store:
        Shared :class:`SpanStore`.
    cache:
        Cache for query embeddings.  Keep it apart from the span cache so
        one-off queries do not evict span embeddings.
    embed_fn:
        ``embed(text, model_version) -> vector``.
    model_version:
        Model used to embed queries.  Must equal the index's model.
    weights:
        Ranking weights; defaults are similarity-dominant.
    overfetch_factor:
        Candidates fetched per requested result before filtering.
    recency_half_life:
        Seconds for the recency signal to halve.
    on_corrupt:
        Called with ``(entry_id, file_path)`` for hits whose span cannot
        be resolved.
    version_source:
        Returns the last ingestion version for :meth:`index_status`.
    """

    def __init__(
        self,
        index: VectorIndex,
        span_store: SpanStore,
        cache: EmbeddingCache,
        embed_fn: Callable[[str, str], Sequence[float]],
        model_version: str,
        weights: Optional[RankingWeights] = None,
        overfetch_factor: int = DEFAULT_OVERFETCH_FACTOR,
        recency_half_life: float = DEFAULT_HALF_LIFE_SECONDS,
        on_corrupt: Optional[Callable[[str, str], object]] = None,
        version_source: Optional[Callable[[], int]] = None,
    ) -> None:
        self._index = index
        self._span_store = span_store
        self._cache = cache
        self._embed_fn = embed_fn
        self._model_version = model_version
        self.weights = weights or RankingWeights()
        self._overfetch = max(1, overfetch_factor)
        self._half_life = recency_half_life
        self._on_corrupt = on_corrupt
        self._version_source = version_source or (lambda: 0)

    # ------------------------------------------------------------------
    # search_code
    # ------------------------------------------------------------------

    def search_code(
        self,
        query_text: str,
        project_scope: ProjectScope = None,
        top_k: int = 10,
        kind_filter: Optional[Iterable[Union[str, SpanKind]]] = None,
        query_context: Optional[Iterable[str]] = None,
    ) -> SearchResponse:
        """
        Embed *query_text* and return the *top_k* best ranked spans.

        Parameters
        ----------
        query_text:
            Natural-language or code query.
        project_scope:
            Path prefix, glob, or list of them; hits outside are dropped.
        top_k:
            Maximum number of results.
        kind_filter:
            Span kinds to keep (e.g. ``["function", "method"]``).
        query_context:
            Symbols the caller is working with; defaults to identifiers
            found in *query_text*.
        """
        t0 = time.perf_counter()
        if top_k <= 0:
            return SearchResponse()
        if not query_text or not query_text.strip():
            return SearchResponse(reason=REASON_EMPTY_QUERY)
        if self._model_version != self._index.model_version:
            logger.warning(
                "Rejecting query: index model '%s' differs from query model '%s'",
                self._index.model_version, self._model_version,
            )
            return SearchResponse(reason=REASON_MODEL_MISMATCH)

        try:
            embedding = self._cache.get_or_compute(
                query_text, self._model_version,
                lambda text: self._embed_fn(text, self._model_version),
            )
        except ComputeFailed as exc:
            logger.warning("Failed to embed query: %s", exc.reason)
            return SearchResponse(reason=REASON_EMBEDDING_FAILED)

        in_scope = scope_matcher(project_scope)
        kinds = (
            frozenset(SpanKind.coerce(k) for k in kind_filter)
            if kind_filter is not None else None
        )

        def _accept(file_path: str, span_kind: SpanKind) -> bool:
            if kinds is not None and span_kind not in kinds:
                return False
            return in_scope is None or in_scope(file_path)

        context = (
            set(query_context) if query_context is not None
            else query_identifiers(query_text)
        )
        reference = self._span_store.newest_modified_at()
        fetch = top_k * self._overfetch

        try:
            hits = self._index.search(embedding.vector, fetch)
            results = self._rank(hits, _accept, context, reference)
            if len(results) < top_k and (in_scope is not None or kinds is not None):
                # post-filter starved the candidate list; push the filter down
                hits = self._index.search(embedding.vector, fetch, filter=_accept)
                results = self._rank(hits, _accept, context, reference)
        except (ValueError, IndexCorrupt) as exc:
            logger.warning("Vector index search failed: %s", exc)
            return SearchResponse(reason=REASON_INDEX_ERROR)

        elapsed = (time.perf_counter() - t0) * 1000
        logger.info("Semantic search returned %d results in %.1fms",
                    min(len(results), top_k), elapsed)
        return SearchResponse(results=results[:top_k])

    def _rank(
        self,
        hits: list[tuple[str, float]],
        accept: SearchFilter,
        context: set[str],
        reference: float,
    ) -> list[SearchResult]:
        w = self.weights
        results: list[SearchResult] = []
        for entry_id, similarity in hits:
            entry = self._index.get(entry_id)
            if entry is None:
                continue  # removed since the search
            if not accept(entry.file_path, entry.span_kind):
                continue
            record = self._span_store.get_record(entry.file_path)
            span = self._span_store.find_span(entry.file_path, entry.start_line)
            if (
                record is None or span is None
                or embedding_id_for(span.content, self._model_version) != entry.embedding_id
            ):
                self._report_corrupt(entry_id, entry.file_path)
                continue

            recency = recency_decay(record.file.modified_at, reference, self._half_life)
            overlap = dependency_overlap(context, span.dependencies)
            score = (
                similarity * w.similarity
                + recency * w.recency
                + overlap * w.dependency
            )
            results.append(
                SearchResult(
                    entry_id=entry_id,
                    embedding_id=entry.embedding_id,
                    file_path=span.file_path,
                    start_line=span.start_line,
                    end_line=span.end_line,
                    span_kind=span.span_kind,
                    name=span.name,
                    content=span.content,
                    language=span.language,
                    dependencies=span.dependencies,
                    similarity=similarity,
                    recency=recency,
                    dependency_overlap=overlap,
                    score=score,
                )
            )
        results.sort(key=lambda r: (-r.score, r.entry_id))
        return results

    def _report_corrupt(self, entry_id: str, file_path: str) -> None:
        logger.warning("Index entry %s has no matching span; skipping", entry_id)
        if self._on_corrupt is not None:
            try:
                self._on_corrupt(entry_id, file_path)
            except Exception as exc:
                logger.warning("Could not schedule repair of %s: %s", entry_id, exc)

    # ------------------------------------------------------------------
    # Related files and status
    # ------------------------------------------------------------------

    def suggest_related_files(
        self,
        current_file: str,
        limit: int = 10,
        per_span_k: int = 10,
    ) -> list[ProjectFile]:
        """
        Rank other files by similarity to *current_file*'s spans.

        Each indexed span of *current_file* is used as a query; a file's
        relevance is the mean over those queries of its best hit.

        Raises
        ------
        NotFound
            If *current_file* is not indexed.
        """
        record = self._span_store.get_record(current_file)
        if record is None:
            raise NotFound(current_file)
        if limit <= 0:
            return []

        query_vectors: list[np.ndarray] = []
        for span in record.spans:
            eid = entry_id_for(
                embedding_id_for(span.content, self._model_version),
                current_file, span.start_line,
            )
            entry = self._index.get(eid)
            if entry is not None:
                query_vectors.append(entry.vector)
        if not query_vectors:
            return []

        def _other_file(file_path: str, span_kind: SpanKind) -> bool:
            return file_path != current_file

        totals: dict[str, float] = {}
        for vector in query_vectors:
            best: dict[str, float] = {}
            for hit_id, similarity in self._index.search(vector, per_span_k, filter=_other_file):
                hit = self._index.get(hit_id)
                if hit is None:
                    continue
                best[hit.file_path] = max(best.get(hit.file_path, -1.0), similarity)
            for path, similarity in best.items():
                totals[path] = totals.get(path, 0.0) + similarity

        ranked = sorted(
            ((total / len(query_vectors), path) for path, total in totals.items()),
            key=lambda t: (-t[0], t[1]),
        )
        files: list[ProjectFile] = []
        for relevance, path in ranked:
            other = self._span_store.get_record(path)
            if other is None:
                continue
            files.append(replace(other.file, ai_relevance=round(relevance, 4)))
            if len(files) >= limit:
                break
        return files

    def index_status(self) -> IndexStatus:
        stats = self._span_store.stats()
        return IndexStatus(
            files_indexed=stats["file_count"],
            spans_indexed=len(self._index),
            last_ingestion_version=self._version_source(),
            incomplete_files=stats["incomplete_files"],
        )
