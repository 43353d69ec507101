"""
Ingestion Pipeline: keeps the index in step with file-change events.

Per file the pipeline walks ``Unseen -> Stale -> Indexed`` on every
``FileChanged`` and ``* -> Removed`` on ``FileRemoved``.  A pass:

  1. bumps the ingestion version and marks the file Stale
  2. retires the file's old index entries
  3. swaps the new span list into the Span Store in one step
  4. embeds each span through the Embedding Cache and inserts its entry
  5. marks the file Indexed

A span whose embedding fails is logged and skipped; the rest of the
file still gets indexed and the file is flagged "not fully indexed".

Events for one path are applied in receipt order.  Different paths run
concurrently on a bounded worker pool.
"""

from __future__ import annotations

import logging
import threading
from collections import deque
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Callable, Iterable, Optional, Sequence

from tqdm import tqdm

from ..errors import ComputeFailed, ModelVersionMismatch, NotFound
from ..models import (
    ChangeEvent,
    CodeEmbedding,
    CodeSpan,
    FileChanged,
    FileRemoved,
    FileState,
    IndexEntry,
    ProjectFile,
    as_vector,
    check_span_order,
    embedding_id_for,
    entry_id_for,
    transition,
)
from .embedding_cache import EmbeddingCache
from .span_store import SpanStore
from .vector_index import VectorIndex

logger = logging.getLogger(__name__)

DEFAULT_MAX_WORKERS = 4
DEFAULT_STALE_VERSION_LAG = 1

EmbedFn = Callable[[str, str], Sequence[float]]


@dataclass
class IngestionResult:
    """Outcome of applying one change event."""

    path: str
    state: FileState
    version: int
    indexed: int = 0
    failed: int = 0
    computed: int = 0
    retired: int = 0
    error: Optional[str] = None

    @property
    def fully_indexed(self) -> bool:
        return self.failed == 0 and self.error is None


@dataclass
class ReconcileReport:
    version: int
    listing_version: int = 0
    removed_files: list[str] = field(default_factory=list)
    dropped_entries: list[str] = field(default_factory=list)
    repaired_entries: list[str] = field(default_factory=list)


class IngestionPipeline:
    """
    Orchestrates span embedding and index mutation for change events.

    Parameters
    ----------
    span_store:
        Shared :class:`SpanStore`.
    cache:
        Shared :class:`EmbeddingCache`.
    index:
        Shared :class:`VectorIndex`.
    embed_fn:
        ``embed(text, model_version) -> vector``.  May be slow or raise.
    model_version:
        Embedding model identity used for every span.
    max_workers:
        Upper bound on concurrently ingested files.
    stale_version_lag:
        Number of listings (:meth:`observe` calls) a file may be missing
        from before :meth:`reconcile` removes it.  Edits to other files
        do not count.
    """

    def __init__(
        self,
        span_store: SpanStore,
        cache: EmbeddingCache,
        index: VectorIndex,
        embed_fn: EmbedFn,
        model_version: str,
        max_workers: int = DEFAULT_MAX_WORKERS,
        stale_version_lag: int = DEFAULT_STALE_VERSION_LAG,
    ) -> None:
        self._span_store = span_store
        self._cache = cache
        self._index = index
        self._embed_fn = embed_fn
        self._model_version = model_version
        self._stale_lag = stale_version_lag

        self._version = 0
        self._listing_version = 0
        self._version_lock = threading.Lock()

        self._states: dict[str, FileState] = {}
        self._file_entries: dict[str, set[str]] = {}
        self._state_lock = threading.Lock()

        self._queues: dict[str, deque] = {}
        self._active: set[str] = set()
        self._queue_lock = threading.Lock()
        self._idle = threading.Condition(self._queue_lock)
        self._executor = ThreadPoolExecutor(
            max_workers=max(1, max_workers), thread_name_prefix="ingest"
        )

    # ------------------------------------------------------------------
    # Properties
    # ------------------------------------------------------------------

    @property
    def model_version(self) -> str:
        return self._model_version

    @property
    def version(self) -> int:
        with self._version_lock:
            return self._version

    @property
    def listing_version(self) -> int:
        """Number of file listings recorded through :meth:`observe`."""
        with self._version_lock:
            return self._listing_version

    def file_state(self, path: str) -> FileState:
        with self._state_lock:
            return self._states.get(path, FileState.UNSEEN)

    def _next_version(self) -> int:
        with self._version_lock:
            self._version += 1
            return self._version

    def _set_state(self, path: str, target: FileState) -> None:
        with self._state_lock:
            current = self._states.get(path, FileState.UNSEEN)
            self._states[path] = transition(path, current, target)

    # ------------------------------------------------------------------
    # Event submission
    # ------------------------------------------------------------------

    def submit(self, event: ChangeEvent) -> "Future[IngestionResult]":
        """Queue *event* behind earlier events for the same path."""
        return self._enqueue(event.path, lambda: self._apply(event))

    def _enqueue(self, path: str, task: Callable[[], object]) -> Future:
        future: Future = Future()
        with self._queue_lock:
            self._queues.setdefault(path, deque()).append((task, future))
            if path not in self._active:
                self._active.add(path)
                self._executor.submit(self._drain, path)
        return future

    def handle(self, event: ChangeEvent) -> IngestionResult:
        """Apply *event* and wait for its result."""
        return self.submit(event).result()

    def ingest_all(
        self,
        events: Iterable[ChangeEvent],
        progress: bool = False,
    ) -> list[IngestionResult]:
        """
        Submit *events* and wait for all of them.

        Returns results in submission order.  A ``tqdm`` bar is shown when
        *progress* is True.
        """
        futures = [self.submit(event) for event in events]
        results: list[IngestionResult] = []
        with tqdm(total=len(futures), desc="Indexing files", unit="file",
                  disable=not progress) as bar:
            for future in futures:
                results.append(future.result())
                bar.update(1)
        return results

    def wait_idle(self, timeout: Optional[float] = None) -> bool:
        """Block until every queued event has been applied."""
        with self._idle:
            return self._idle.wait_for(lambda: not self._active, timeout)

    def shutdown(self, wait: bool = True) -> None:
        self._executor.shutdown(wait=wait)

    def _drain(self, path: str) -> None:
        drained = False
        try:
            while True:
                with self._queue_lock:
                    queue = self._queues.get(path)
                    if not queue:
                        self._release(path)
                        drained = True
                        return
                    task, future = queue.popleft()
                if not future.set_running_or_notify_cancel():
                    continue
                try:
                    future.set_result(task())
                except Exception as exc:
                    logger.error("[pipeline] Failed to process %s: %s", path, exc)
                    future.set_exception(exc)
                except BaseException as exc:
                    future.set_exception(exc)
                    raise
        finally:
            if not drained:
                with self._queue_lock:
                    for _, pending in self._queues.get(path, ()):
                        pending.cancel()
                    self._release(path)
                logger.error("[pipeline] Queue for %s aborted", path)

    def _release(self, path: str) -> None:
        """Forget *path*'s queue and wake :meth:`wait_idle`.  Needs the queue lock."""
        self._queues.pop(path, None)
        self._active.discard(path)
        self._idle.notify_all()

    def _apply(self, event: ChangeEvent) -> IngestionResult:
        if isinstance(event, FileRemoved):
            return self._remove(event.path)
        return self._ingest(event)

    # ------------------------------------------------------------------
    # Passes
    # ------------------------------------------------------------------

    def _ingest(self, event: FileChanged) -> IngestionResult:
        path = event.path
        spans = check_span_order(path, event.spans)
        version = self._next_version()
        self._set_state(path, FileState.STALE)

        retired = self._retire(path)
        project_file = ProjectFile(
            path=path,
            size=event.size,
            modified_at=event.modified_at,
            file_type=event.file_type,
            last_seen_version=self.listing_version,
        )
        self._span_store.upsert_file_spans(path, spans, version, project_file)

        computed = 0

        def _compute(text: str) -> Sequence[float]:
            nonlocal computed
            computed += 1
            return self._embed_fn(text, self._model_version)

        indexed = failed = 0
        for span in spans:
            try:
                embedding = self._cache.get_or_compute(
                    span.content, self._model_version, _compute,
                    span=span, language=span.language,
                )
                self._insert(span, embedding, version)
            except (ComputeFailed, ValueError) as exc:
                failed += 1
                logger.warning(
                    "[pipeline] Skipping span %s:%d-%d: %s",
                    path, span.start_line, span.end_line, exc,
                )
                continue
            indexed += 1

        if failed:
            self._span_store.set_fully_indexed(path, False)
        self._set_state(path, FileState.INDEXED)
        logger.info(
            "[pipeline] Indexed %s (v%d): %d spans, %d skipped, %d computed",
            path, version, indexed, failed, computed,
        )
        return IngestionResult(
            path=path, state=FileState.INDEXED, version=version,
            indexed=indexed, failed=failed, computed=computed, retired=retired,
        )

    def _remove(self, path: str) -> IngestionResult:
        self._set_state(path, FileState.REMOVED)
        retired = self._retire(path)
        error: Optional[str] = None
        try:
            self._span_store.remove_file(path)
        except NotFound as exc:
            logger.debug("[pipeline] Remove of unknown file: %s", exc.path)
            error = "not_found"
        logger.info("[pipeline] Removed %s (%d entries)", path, retired)
        return IngestionResult(
            path=path, state=FileState.REMOVED, version=self.version,
            retired=retired, error=error,
        )

    def _retire(self, path: str) -> int:
        with self._state_lock:
            entry_ids = self._file_entries.pop(path, set())
        for entry_id in sorted(entry_ids):
            self._index.remove(entry_id)
        return len(entry_ids)

    def _insert(self, span: CodeSpan, embedding: CodeEmbedding, version: int) -> IndexEntry:
        entry = IndexEntry(
            entry_id=entry_id_for(embedding.id, span.file_path, span.start_line),
            embedding_id=embedding.id,
            vector=embedding.vector,
            file_path=span.file_path,
            span_kind=span.span_kind,
            last_seen_version=version,
            start_line=span.start_line,
        )
        self._index.insert(entry)
        with self._state_lock:
            self._file_entries.setdefault(entry.file_path, set()).add(entry.entry_id)
        return entry

    def restore(
        self,
        version: int,
        indexed_paths: Iterable[str],
        listing_version: int = 0,
    ) -> None:
        """
        Adopt state loaded from a snapshot.

        Entries already present in the index are attributed to their files.
        """
        with self._version_lock:
            self._version = max(self._version, version)
            self._listing_version = max(self._listing_version, listing_version)
        with self._state_lock:
            for path in indexed_paths:
                self._states[path] = FileState.INDEXED
            for entry in self._index.entries():
                self._file_entries.setdefault(entry.file_path, set()).add(entry.entry_id)

    # ------------------------------------------------------------------
    # Direct insertion
    # ------------------------------------------------------------------

    def store_embedding(self, embedding: CodeEmbedding) -> str:
        """
        Index a caller-supplied embedding for ``embedding.span``.

        The span is merged into its file's span list, replacing any span
        with the same start line.  The embedding's id is normalised to the
        content-derived id, which is returned.

        Raises
        ------
        ModelVersionMismatch
            If the embedding came from a different model.
        ValueError
            If the embedding has no span, or the span overlaps another one.
        """
        if embedding.model_version and embedding.model_version != self._model_version:
            raise ModelVersionMismatch(self._model_version, embedding.model_version)
        span = embedding.span
        if span is None:
            raise ValueError("Embedding has no span to index")
        stored = CodeEmbedding(
            id=embedding_id_for(span.content, self._model_version),
            span=span,
            vector=as_vector(embedding.vector),
            language=embedding.language or span.language,
            model_version=self._model_version,
        )

        def _task() -> str:
            path = span.file_path
            record = self._span_store.get_record(path)
            others = [s for s in (record.spans if record else ()) if s.start_line != span.start_line]
            merged = check_span_order(path, others + [span])
            version = self._next_version()
            self._set_state(path, FileState.STALE)
            stale_id = self._entry_id_at(path, span.start_line)
            if stale_id is not None:
                self._index.remove(stale_id)
                with self._state_lock:
                    self._file_entries.get(path, set()).discard(stale_id)
            project_file = (
                record.file if record
                else ProjectFile(path=path, last_seen_version=self.listing_version)
            )
            self._span_store.upsert_file_spans(path, merged, version, project_file)
            self._cache.put(stored, span.content)
            self._insert(span, stored, version)
            self._set_state(path, FileState.INDEXED)
            return stored.id

        return self._enqueue(span.file_path, _task).result()

    def _entry_id_at(self, file_path: str, start_line: int) -> Optional[str]:
        with self._state_lock:
            ids = list(self._file_entries.get(file_path, ()))
        for entry_id in ids:
            entry = self._index.get(entry_id)
            if entry is not None and entry.start_line == start_line:
                return entry_id
        return None

    # ------------------------------------------------------------------
    # Reconciliation
    # ------------------------------------------------------------------

    def observe(self, paths: Iterable[str]) -> list[str]:
        """
        Record a listing of the files currently present.

        Bumps the listing version once and marks every listed, already
        indexed file as seen in it.  Returns the listed paths that are not
        indexed.
        """
        with self._version_lock:
            self._listing_version += 1
            listing = self._listing_version
        unknown = [p for p in paths if not self._span_store.mark_seen(p, listing)]
        logger.debug("[pipeline] Observed listing %d (%d unknown)", listing, len(unknown))
        return unknown

    def reconcile(self, max_lag: Optional[int] = None) -> ReconcileReport:
        """
        Sweep for files and entries that lost their deletion notification.

        Removes files absent from more than *max_lag* (default
        ``stale_version_lag``) of the listings recorded by :meth:`observe`,
        then drops or repairs index entries no longer backed by the Span
        Store.  Without listings no file is ever considered missing.
        """
        lag = self._stale_lag if max_lag is None else max_lag
        current = self.version
        listing = self.listing_version
        report = ReconcileReport(version=current, listing_version=listing)

        for project_file in self._span_store.all_files():
            if listing - project_file.last_seen_version > lag:
                self.handle(FileRemoved(project_file.path))
                report.removed_files.append(project_file.path)

        for entry_id in self._index.verify(self._is_backed):
            entry = self._index.get(entry_id)
            path = entry.file_path if entry is not None else ""
            if self.schedule_repair(entry_id, path).result():
                report.repaired_entries.append(entry_id)
            else:
                report.dropped_entries.append(entry_id)

        if report.removed_files or report.dropped_entries or report.repaired_entries:
            logger.info(
                "[pipeline] Reconcile at listing %d: %d files removed, %d entries dropped, "
                "%d repaired",
                listing, len(report.removed_files), len(report.dropped_entries),
                len(report.repaired_entries),
            )
        return report

    def _is_backed(self, entry: IndexEntry) -> bool:
        span = self._span_store.find_span(entry.file_path, entry.start_line)
        return span is not None and entry.embedding_id == self._embedding_id(span)

    def _embedding_id(self, span: CodeSpan) -> str:
        return embedding_id_for(span.content, self._model_version)

    def schedule_repair(self, entry_id: str, file_path: str) -> "Future[bool]":
        """Queue :meth:`repair_entry` behind pending events for *file_path*."""
        return self._enqueue(file_path, lambda: self.repair_entry(entry_id))

    def repair_entry(self, entry_id: str) -> bool:
        """
        Drop a corrupt entry and re-index its span if it still exists.

        Returns True when the span was re-indexed.
        """
        entry = self._index.get(entry_id)
        self._index.remove(entry_id)
        if entry is None:
            return False
        with self._state_lock:
            self._file_entries.get(entry.file_path, set()).discard(entry_id)

        span = self._span_store.find_span(entry.file_path, entry.start_line)
        record = self._span_store.get_record(entry.file_path)
        if span is None or record is None:
            logger.warning("[pipeline] Dropped orphan entry %s", entry_id)
            return False
        try:
            embedding = self._cache.get_or_compute(
                span.content, self._model_version,
                lambda text: self._embed_fn(text, self._model_version),
                span=span, language=span.language,
            )
            self._insert(span, embedding, record.version)
        except (ComputeFailed, ValueError) as exc:
            logger.warning("[pipeline] Could not re-index %s: %s", entry_id, exc)
            self._span_store.set_fully_indexed(entry.file_path, False)
            return False
        logger.info("[pipeline] Re-indexed corrupt entry %s", entry_id)
        return True
