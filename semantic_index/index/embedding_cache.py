"""
Embedding Cache: ``(content_hash, model_version) -> CodeEmbedding``.

Avoids recomputing vectors when identical code reappears.  Concurrent
misses for the same key share one computation: the first caller owns a
pending :class:`~concurrent.futures.Future`, later callers wait on it.

The cache is a latency optimisation only.  Evicting an entry never
touches the Vector Index, which keeps its own copy of each vector.
"""

from __future__ import annotations

import logging
import threading
from collections import OrderedDict
from concurrent.futures import Future
from typing import Callable, Optional, Sequence

from ..errors import ComputeFailed
from ..models import CodeEmbedding, CodeSpan, as_vector, content_hash, embedding_id_for

logger = logging.getLogger(__name__)

DEFAULT_CAPACITY = 50_000

ComputeFn = Callable[[str], Sequence[float]]


class EmbeddingCache:
    """
    Thread-safe LRU cache with single-flight computation per key.

    Parameters
    ----------
    capacity:
        Maximum number of cached embeddings before least-recently-used
        entries are evicted.
    """

    def __init__(self, capacity: int = DEFAULT_CAPACITY) -> None:
        if capacity < 1:
            raise ValueError("capacity must be >= 1")
        self._capacity = capacity
        self._entries: "OrderedDict[tuple[str, str], CodeEmbedding]" = OrderedDict()
        self._pending: dict[tuple[str, str], Future] = {}
        self._lock = threading.Lock()
        self.hits = 0
        self.misses = 0
        self.computations = 0
        self.evictions = 0

    def get_or_compute(
        self,
        content: str,
        model_version: str,
        compute_fn: ComputeFn,
        span: Optional[CodeSpan] = None,
        language: str = "",
    ) -> CodeEmbedding:
        """
        Return the embedding for *content*, computing it on a miss.

        Parameters
        ----------
        content:
            Text to embed.
        model_version:
            Embedding model identity; part of the cache key.
        compute_fn:
            Called with *content* on a miss.  May be slow or raise.
        span:
            Span recorded on a freshly computed embedding.
        language:
            Language recorded on a freshly computed embedding.

        Raises
        ------
        ComputeFailed
            If *compute_fn* fails.  Nothing is cached, so the next call
            retries.
        """
        key = (content_hash(content), model_version)
        with self._lock:
            cached = self._entries.get(key)
            if cached is not None:
                self._entries.move_to_end(key)
                self.hits += 1
                return cached
            pending = self._pending.get(key)
            owner = pending is None
            if owner:
                pending = Future()
                self._pending[key] = pending
                self.misses += 1

        if not owner:
            logger.debug("[cache] Joining in-flight computation for %s", key[0])
            return pending.result()

        try:
            embedding = self._compute(content, model_version, compute_fn, span, language)
        except BaseException as exc:
            # waiters must be released whatever happened
            with self._lock:
                self._pending.pop(key, None)
            pending.set_exception(exc)
            raise
        with self._lock:
            self._pending.pop(key, None)
            self._entries[key] = embedding
            self._evict_locked()
        pending.set_result(embedding)
        return embedding

    def _compute(
        self,
        content: str,
        model_version: str,
        compute_fn: ComputeFn,
        span: Optional[CodeSpan],
        language: str,
    ) -> CodeEmbedding:
        with self._lock:
            self.computations += 1
        try:
            vector = as_vector(compute_fn(content))
        except ComputeFailed:
            raise
        except Exception as exc:
            raise ComputeFailed(str(exc) or type(exc).__name__) from exc
        return CodeEmbedding(
            id=embedding_id_for(content, model_version),
            span=span,
            vector=vector,
            language=language or (span.language if span else ""),
            model_version=model_version,
        )

    def put(self, embedding: CodeEmbedding, content: str) -> None:
        """Store a precomputed *embedding* for *content*."""
        key = (content_hash(content), embedding.model_version)
        with self._lock:
            self._entries[key] = embedding
            self._entries.move_to_end(key)
            self._evict_locked()

    def _evict_locked(self) -> None:
        while len(self._entries) > self._capacity:
            evicted_key, _ = self._entries.popitem(last=False)
            self.evictions += 1
            logger.debug("[cache] Evicted %s", evicted_key[0])

    def contains(self, content: str, model_version: str) -> bool:
        with self._lock:
            return (content_hash(content), model_version) in self._entries

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    @property
    def capacity(self) -> int:
        return self._capacity
