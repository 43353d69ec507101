"""
Span Store: the current mapping from file to its code spans.

Source of truth for what has been indexed.  Each file's spans are kept
as one immutable record which is swapped in whole, so a reader sees
either the old span set or the new one, never a mix.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, replace
from typing import Optional, Sequence

from ..errors import NotFound
from ..models import CodeSpan, ProjectFile, check_span_order

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class FileRecord:
    """One file's metadata together with the spans of its latest pass."""

    file: ProjectFile
    spans: tuple[CodeSpan, ...]
    version: int


class SpanStore:
    """
    In-memory, thread-safe span store keyed by file path.

    Writers serialise on a lock; every write replaces a whole
    :class:`FileRecord`.
    """

    def __init__(self) -> None:
        self._records: dict[str, FileRecord] = {}
        self._lock = threading.Lock()

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def upsert_file_spans(
        self,
        file_path: str,
        spans: Sequence[CodeSpan],
        version: int,
        project_file: Optional[ProjectFile] = None,
    ) -> FileRecord:
        """
        Replace all spans recorded for *file_path* with *spans*.

        Parameters
        ----------
        file_path:
            Project-relative path (unique key).
        spans:
            The complete span list observed in this pass.
        version:
            Ingestion-pass counter the spans are tagged with.
        project_file:
            File metadata.  When omitted the previous metadata is kept
            (or a bare record is created).
        """
        ordered = tuple(check_span_order(file_path, spans))
        with self._lock:
            previous = self._records.get(file_path)
            if project_file is None:
                project_file = previous.file if previous else ProjectFile(path=file_path)
            project_file = replace(project_file, path=file_path)
            record = FileRecord(file=project_file, spans=ordered, version=version)
            self._records[file_path] = record
        logger.debug("[span store] %s -> %d spans (v%d)", file_path, len(ordered), version)
        return record

    def remove_file(self, file_path: str) -> FileRecord:
        """
        Delete all of *file_path*'s spans and return the removed record.

        Raises
        ------
        NotFound
            If the file is not in the store.
        """
        with self._lock:
            record = self._records.pop(file_path, None)
        if record is None:
            raise NotFound(file_path)
        return record

    def mark_seen(self, file_path: str, version: int) -> bool:
        """Record that *file_path* was present in listing *version*.  Returns False if unknown."""
        with self._lock:
            record = self._records.get(file_path)
            if record is None:
                return False
            self._records[file_path] = replace(
                record, file=replace(record.file, last_seen_version=version)
            )
        return True

    def set_fully_indexed(self, file_path: str, fully_indexed: bool) -> None:
        with self._lock:
            record = self._records.get(file_path)
            if record is not None and record.file.fully_indexed != fully_indexed:
                self._records[file_path] = replace(
                    record, file=replace(record.file, fully_indexed=fully_indexed)
                )

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get_record(self, file_path: str) -> Optional[FileRecord]:
        with self._lock:
            return self._records.get(file_path)

    def spans_for_file(self, file_path: str) -> tuple[CodeSpan, ...]:
        """
        Return the spans of *file_path*'s latest pass, ordered by start line.

        Raises
        ------
        NotFound
            If the file is not in the store.
        """
        record = self.get_record(file_path)
        if record is None:
            raise NotFound(file_path)
        return record.spans

    def find_span(self, file_path: str, start_line: int) -> Optional[CodeSpan]:
        """Return the span of *file_path* starting at *start_line*, if any."""
        record = self.get_record(file_path)
        if record is None:
            return None
        for span in record.spans:
            if span.start_line == start_line:
                return span
        return None

    def all_files(self) -> list[ProjectFile]:
        """Return every stored file, sorted by path."""
        with self._lock:
            records = list(self._records.values())
        return sorted((r.file for r in records), key=lambda f: f.path)

    def records(self) -> list[FileRecord]:
        with self._lock:
            records = list(self._records.values())
        return sorted(records, key=lambda r: r.file.path)

    def __contains__(self, file_path: object) -> bool:
        with self._lock:
            return file_path in self._records

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)

    def newest_modified_at(self) -> float:
        """Latest ``modified_at`` across stored files (0.0 when empty)."""
        with self._lock:
            return max((r.file.modified_at for r in self._records.values()), default=0.0)

    def stats(self) -> dict:
        """
        Return aggregate statistics.

        Returns
        -------
        dict
            Keys: file_count, span_count, incomplete_files.
        """
        with self._lock:
            records = list(self._records.values())
        return {
            "file_count": len(records),
            "span_count": sum(len(r.spans) for r in records),
            "incomplete_files": sorted(
                r.file.path for r in records if not r.file.fully_indexed
            ),
        }
