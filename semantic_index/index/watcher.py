"""
File watcher that feeds the Ingestion Pipeline.

Uses watchdog to monitor project files.  Span extraction is not done
here: an injected ``extractor(rel_path) -> Sequence[CodeSpan]`` turns a
changed file into spans, and the watcher submits the resulting
``FileChanged`` / ``FileRemoved`` events.
"""

from __future__ import annotations

import logging
import os
import threading
from typing import Callable, Iterable, Iterator, Optional, Sequence

from watchdog.events import FileSystemEventHandler
from watchdog.observers import Observer

from ..models import ChangeEvent, CodeSpan, FileChanged, FileRemoved

logger = logging.getLogger(__name__)

Extractor = Callable[[str], Sequence[CodeSpan]]

_SKIP_DIRS: frozenset[str] = frozenset({
    "node_modules", "dist", "build", "__pycache__",
    ".git", "vendor", ".semantic_index",
    ".venv", "venv", "env", ".env",
    ".tox", ".mypy_cache", ".pytest_cache",
    "target", "bin", "obj",
    "coverage", ".next", ".nuxt",
    "out", ".output", "eggs", ".eggs", ".cache",
})

DEFAULT_EXTENSIONS: frozenset[str] = frozenset({
    ".py", ".js", ".jsx", ".ts", ".tsx", ".java", ".kt", ".go", ".rs",
    ".rb", ".php", ".c", ".h", ".cpp", ".hpp", ".cc", ".cs", ".swift",
    ".scala", ".dart",
})


def _normalize(rel_path: str) -> str:
    return rel_path.replace("\\", "/")


def build_change_event(project_root: str, rel_path: str, extractor: Extractor) -> ChangeEvent:
    """
    Build the event describing *rel_path*'s current state on disk.

    A file that no longer exists yields ``FileRemoved``.
    """
    rel_path = _normalize(rel_path)
    abs_path = os.path.join(project_root, rel_path)
    try:
        st = os.stat(abs_path)
    except FileNotFoundError:
        return FileRemoved(rel_path)
    spans = extractor(rel_path)
    return FileChanged(
        path=rel_path,
        spans=tuple(spans),
        size=st.st_size,
        modified_at=st.st_mtime,
        file_type=os.path.splitext(rel_path)[1].lstrip(".").lower(),
    )


def iter_project_files(
    project_root: str,
    extensions: Iterable[str] = DEFAULT_EXTENSIONS,
) -> Iterator[str]:
    """Yield project-relative paths of source files under *project_root*."""
    exts = frozenset(e.lower() for e in extensions)
    for dirpath, dirnames, filenames in os.walk(project_root, topdown=True):
        # Prune excluded directories in-place (modifies the walk)
        dirnames[:] = sorted(
            d for d in dirnames
            if d not in _SKIP_DIRS and not d.startswith(".")
        )
        for fname in sorted(filenames):
            if os.path.splitext(fname)[1].lower() not in exts:
                continue
            abs_path = os.path.join(dirpath, fname)
            yield _normalize(os.path.relpath(abs_path, project_root))


class FileChangeHandler(FileSystemEventHandler):
    """
    Watchdog event handler that turns file events into change events.

    Parameters
    ----------
    submit:
        Receives each change event, typically ``IngestionPipeline.submit``.
    project_root:
        Absolute path to the project root (used to compute relative paths).
    extractor:
        ``extractor(rel_path) -> Sequence[CodeSpan]``.
    extensions:
        File extensions to watch.
    debounce_seconds:
        Quiet period after the last event for a file before it is
        extracted.  Each new event for the file restarts the period, so a
        burst of saves yields one event with the final content.  0
        processes every event immediately.
    """

    def __init__(
        self,
        submit: Callable[[ChangeEvent], object],
        project_root: str,
        extractor: Extractor,
        extensions: Iterable[str] = DEFAULT_EXTENSIONS,
        debounce_seconds: float = 0.5,
    ) -> None:
        super().__init__()
        self._submit = submit
        self._project_root = os.path.abspath(project_root)
        self._extractor = extractor
        self._extensions = frozenset(e.lower() for e in extensions)
        self._debounce = debounce_seconds
        self._timers: dict[str, threading.Timer] = {}
        self._lock = threading.Lock()

    # ------------------------------------------------------------------
    # Watchdog event dispatch
    # ------------------------------------------------------------------

    def on_modified(self, event) -> None:
        if not event.is_directory:
            self._handle_change(event.src_path)

    def on_created(self, event) -> None:
        if not event.is_directory:
            self._handle_change(event.src_path)

    def on_deleted(self, event) -> None:
        if not event.is_directory:
            self._handle_delete(event.src_path)

    def on_moved(self, event) -> None:
        if not event.is_directory:
            self._handle_delete(event.src_path)
            self._handle_change(event.dest_path)

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _rel_path(self, abs_path: str) -> Optional[str]:
        """Convert *abs_path* to a project-relative path, or None if outside."""
        try:
            rel = os.path.relpath(abs_path, self._project_root)
        except ValueError:
            return None
        if rel.startswith(".."):
            return None
        return _normalize(rel)

    def _should_ignore(self, abs_path: str) -> bool:
        ext = os.path.splitext(abs_path)[1].lower()
        if ext not in self._extensions:
            return True
        parts = abs_path.replace("\\", "/").split("/")
        return any(part in _SKIP_DIRS for part in parts)

    def _handle_change(self, abs_path: str) -> None:
        if self._should_ignore(abs_path):
            return
        rel_path = self._rel_path(abs_path)
        if rel_path is None:
            return
        if self._debounce <= 0:
            self._process(rel_path)
            return
        # trailing edge: every event re-arms the timer, the last one wins
        timer = threading.Timer(self._debounce, self._fire, args=(rel_path,))
        timer.daemon = True
        with self._lock:
            previous = self._timers.get(rel_path)
            self._timers[rel_path] = timer
        if previous is not None:
            previous.cancel()
        timer.start()

    def _fire(self, rel_path: str) -> None:
        with self._lock:
            if self._timers.get(rel_path) is not threading.current_thread():
                return  # superseded
            del self._timers[rel_path]
        self._process(rel_path)

    def _process(self, rel_path: str) -> None:
        try:
            event = build_change_event(self._project_root, rel_path, self._extractor)
        except Exception as exc:
            logger.warning("[watcher] Could not extract spans from %s: %s", rel_path, exc)
            return
        logger.info("[watcher] Updated: %s", rel_path)
        self._submit(event)

    def _handle_delete(self, abs_path: str) -> None:
        if self._should_ignore(abs_path):
            return
        rel_path = self._rel_path(abs_path)
        if rel_path is None:
            return
        with self._lock:
            pending = self._timers.pop(rel_path, None)
        if pending is not None:
            pending.cancel()
        logger.info("[watcher] Deleted: %s", rel_path)
        self._submit(FileRemoved(rel_path))

    # ------------------------------------------------------------------
    # Pending changes
    # ------------------------------------------------------------------

    @property
    def pending(self) -> list[str]:
        """Paths with a change waiting out the debounce delay."""
        with self._lock:
            return sorted(self._timers)

    def flush_pending(self) -> None:
        """Process every pending change now instead of waiting for its timer."""
        with self._lock:
            pending, self._timers = self._timers, {}
        for rel_path in sorted(pending):
            pending[rel_path].cancel()
            self._process(rel_path)


class ProjectWatcher:
    """
    High-level wrapper around watchdog that monitors a project directory.

    Usage::

        watcher = ProjectWatcher(pipeline.submit, "/path/to/project", extractor)
        watcher.start()
        ...
        watcher.stop()
    """

    def __init__(
        self,
        submit: Callable[[ChangeEvent], object],
        project_root: str,
        extractor: Extractor,
        extensions: Iterable[str] = DEFAULT_EXTENSIONS,
        debounce_seconds: float = 0.5,
    ) -> None:
        self._project_root = os.path.abspath(project_root)
        self._observer: Optional[Observer] = None
        self.handler = FileChangeHandler(
            submit, self._project_root, extractor,
            extensions=extensions, debounce_seconds=debounce_seconds,
        )

    @property
    def is_running(self) -> bool:
        return self._observer is not None and self._observer.is_alive()

    def start(self) -> None:
        """Start watching in watchdog's background thread."""
        if self._observer is not None:
            return
        observer = Observer()
        observer.schedule(self.handler, self._project_root, recursive=True)
        observer.daemon = True
        observer.start()
        self._observer = observer
        logger.info("[watcher] Watching %s", self._project_root)

    def stop(self) -> None:
        """Stop the observer, then submit changes still waiting on a debounce."""
        observer, self._observer = self._observer, None
        if observer is None:
            return
        observer.stop()
        observer.join(timeout=5)
        self.handler.flush_pending()
        logger.info("[watcher] Stopped")
