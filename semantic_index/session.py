"""
Project session: owns one project's Span Store, Embedding Cache, Vector
Index, Ingestion Pipeline and Query Engine for as long as it is open.

Opening a session restores the on-disk snapshot (when persistence is
enabled and the snapshot matches the configured model); closing it
drains the pipeline and writes the snapshot back.
"""

from __future__ import annotations

import logging
import os
import threading
from typing import Callable, Iterable, Optional, Sequence

from .config import Config
from .embedders import create_embedder
from .errors import SemanticIndexError
from .index.embedding_cache import EmbeddingCache
from .index.persistence import Snapshot, SnapshotStore
from .index.pipeline import IngestionPipeline, IngestionResult, ReconcileReport
from .index.query import QueryEngine, RankingWeights, SearchResponse
from .index.span_store import SpanStore
from .index.vector_index import VectorIndex
from .index.watcher import (
    DEFAULT_EXTENSIONS,
    Extractor,
    ProjectWatcher,
    build_change_event,
    iter_project_files,
)
from .models import ChangeEvent, CodeEmbedding, IndexStatus, ProjectFile

logger = logging.getLogger(__name__)

EmbedFn = Callable[[str, str], Sequence[float]]


class ProjectSession:
    """
    A semantic index bound to one project directory.

    Parameters
    ----------
    project_root:
        Directory of the project; the snapshot lives under it.
    config:
        Settings; loaded from the project's config file when omitted.
    embed_fn:
        ``embed(text, model_version) -> vector``.  Defaults to the
        embedder selected by *config*.  If it has a ``model_version``
        attribute, that is the session's model version.
    extractor:
        ``extractor(rel_path) -> Sequence[CodeSpan]``.  Required for
        :meth:`index_project` and file watching.
    """

    def __init__(
        self,
        project_root: str,
        config: Optional[Config] = None,
        embed_fn: Optional[EmbedFn] = None,
        extractor: Optional[Extractor] = None,
    ) -> None:
        self.project_root = os.path.abspath(project_root)
        self.config = config or Config.load(project_root=self.project_root)
        self._embed_fn = embed_fn or create_embedder(self.config)
        self.model_version = (
            getattr(self._embed_fn, "model_version", None) or self.config.MODEL_VERSION
        )
        self._extractor = extractor
        self._snapshot = (
            SnapshotStore.for_project(self.project_root, self.config.STATE_DIR)
            if self.config.PERSIST else None
        )
        self._watcher: Optional[ProjectWatcher] = None
        self._sweeper: Optional[threading.Thread] = None
        self._sweep_stop = threading.Event()
        self._is_open = False
        self._build()

    def _build(self) -> None:
        cfg = self.config
        self.span_store = SpanStore()
        self.cache = EmbeddingCache(cfg.CACHE_CAPACITY)
        self.query_cache = EmbeddingCache(cfg.QUERY_CACHE_CAPACITY)
        self.index = VectorIndex(
            dimension=cfg.EMBEDDING_DIMENSION,
            model_version=self.model_version,
            brute_force_threshold=cfg.BRUTE_FORCE_THRESHOLD,
            m=cfg.HNSW_M,
            ef_construction=cfg.EF_CONSTRUCTION,
            ef_search=cfg.EF_SEARCH,
            compact_ratio=cfg.COMPACT_RATIO,
        )
        self.pipeline = IngestionPipeline(
            self.span_store, self.cache, self.index, self._embed_fn,
            self.model_version,
            max_workers=cfg.MAX_WORKERS,
            stale_version_lag=cfg.STALE_VERSION_LAG,
        )
        self.query = QueryEngine(
            self.index, self.span_store, self.query_cache, self._embed_fn,
            self.model_version,
            weights=RankingWeights(**cfg.WEIGHTS),
            overfetch_factor=cfg.OVERFETCH_FACTOR,
            recency_half_life=cfg.recency_half_life_seconds,
            on_corrupt=self.pipeline.schedule_repair,
            version_source=lambda: self.pipeline.version,
        )

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def is_open(self) -> bool:
        return self._is_open

    def open(self, watch: bool = False) -> "ProjectSession":
        """Restore the snapshot and optionally start watching the project."""
        if self._is_open:
            return self
        if self._snapshot is not None:
            snapshot = self._snapshot.load(self.model_version, self.index.dimension)
            if snapshot is not None:
                self._restore(snapshot)
        self._is_open = True
        if watch:
            self.start_watching()
        logger.info("Opened semantic index for %s (%d files)",
                    self.project_root, len(self.span_store))
        return self

    def _restore(self, snapshot: Snapshot) -> None:
        for record in snapshot.records:
            self.span_store.upsert_file_spans(
                record.file.path, record.spans, record.version, record.file,
            )
        for entry in snapshot.entries:
            self.index.insert(entry)
        self.pipeline.restore(
            snapshot.version, (r.file.path for r in snapshot.records),
            listing_version=snapshot.listing_version,
        )
        logger.info("Restored %d files and %d entries from snapshot (v%d)",
                    len(snapshot.records), len(snapshot.entries), snapshot.version)

    def close(self, save: bool = True) -> None:
        """Stop watching, drain the pipeline and persist the snapshot."""
        if not self._is_open:
            return
        self.stop_watching()
        self.pipeline.wait_idle()
        try:
            if save:
                self.save()
        finally:
            self.pipeline.shutdown()
            self._is_open = False
        logger.info("Closed semantic index for %s", self.project_root)

    def __enter__(self) -> "ProjectSession":
        return self.open()

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def save(self) -> None:
        if self._snapshot is None:
            return
        self.pipeline.wait_idle()
        self._snapshot.save(
            self.span_store, self.index, self.pipeline.version,
            listing_version=self.pipeline.listing_version,
        )

    def reset(self) -> None:
        """Drop everything indexed for this project, in memory and on disk."""
        self.stop_watching()
        self.pipeline.wait_idle()
        self.pipeline.shutdown()
        if self._snapshot is not None:
            self._snapshot.clear()
        self._build()
        logger.info("Reset semantic index for %s", self.project_root)

    # ------------------------------------------------------------------
    # Ingestion
    # ------------------------------------------------------------------

    def _require_extractor(self) -> Extractor:
        if self._extractor is None:
            raise SemanticIndexError("No span extractor configured for this session")
        return self._extractor

    def submit(self, event: ChangeEvent):
        return self.pipeline.submit(event)

    def handle(self, event: ChangeEvent) -> IngestionResult:
        return self.pipeline.handle(event)

    def index_project(
        self,
        extensions: Iterable[str] = DEFAULT_EXTENSIONS,
        progress: bool = False,
    ) -> ReconcileReport:
        """
        Index every source file of the project and drop vanished ones.

        Files that are listed are (re)ingested; indexed files missing from
        the listing are removed.
        """
        extractor = self._require_extractor()
        paths = list(iter_project_files(self.project_root, extensions))
        events = [build_change_event(self.project_root, p, extractor) for p in paths]
        self.pipeline.ingest_all(events, progress=progress)
        self.pipeline.observe(paths)
        return self.pipeline.reconcile(max_lag=0)

    def sweep(self, extensions: Iterable[str] = DEFAULT_EXTENSIONS) -> ReconcileReport:
        """
        List the project once and drop files that stayed missing too long.

        Picks up deletions the watcher never reported.  Listed files the
        index does not know yet are submitted for ingestion when an
        extractor is configured.
        """
        paths = list(iter_project_files(self.project_root, extensions))
        unknown = self.pipeline.observe(paths)
        if unknown and self._extractor is not None:
            for path in unknown:
                self.pipeline.submit(build_change_event(self.project_root, path, self._extractor))
        return self.pipeline.reconcile()

    def _sweep_loop(self, interval: float) -> None:
        while not self._sweep_stop.wait(interval):
            try:
                report = self.sweep()
            except Exception as exc:
                logger.error("Periodic sweep of %s failed: %s", self.project_root, exc)
                continue
            if report.removed_files:
                logger.info("Periodic sweep removed %d files", len(report.removed_files))

    def start_watching(self) -> None:
        """Watch the project for changes and sweep it every ``reconcile_interval`` seconds."""
        if self._watcher is not None:
            return
        self._watcher = ProjectWatcher(
            self.pipeline.submit, self.project_root, self._require_extractor(),
            debounce_seconds=self.config.WATCH_DEBOUNCE,
        )
        self._watcher.start()
        interval = self.config.RECONCILE_INTERVAL
        if interval > 0:
            self._sweep_stop.clear()
            self._sweeper = threading.Thread(
                target=self._sweep_loop, args=(interval,),
                name="semantic-index-sweep", daemon=True,
            )
            self._sweeper.start()

    def stop_watching(self) -> None:
        sweeper, self._sweeper = self._sweeper, None
        if sweeper is not None:
            self._sweep_stop.set()
            sweeper.join(timeout=5)
        watcher, self._watcher = self._watcher, None
        if watcher is not None:
            watcher.stop()

    def reconcile(self, max_lag: Optional[int] = None) -> ReconcileReport:
        return self.pipeline.reconcile(max_lag)

    # ------------------------------------------------------------------
    # Query surface
    # ------------------------------------------------------------------

    def search_code(self, query_text: str, project_scope=None, top_k: int = 10,
                    kind_filter=None, query_context=None) -> SearchResponse:
        return self.query.search_code(
            query_text, project_scope=project_scope, top_k=top_k,
            kind_filter=kind_filter, query_context=query_context,
        )

    def suggest_related_files(self, current_file: str, limit: int = 10) -> list[ProjectFile]:
        return self.query.suggest_related_files(current_file, limit=limit)

    def index_status(self) -> IndexStatus:
        return self.query.index_status()

    def store_code_embedding(self, embedding: CodeEmbedding) -> str:
        return self.pipeline.store_embedding(embedding)
