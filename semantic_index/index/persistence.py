"""
SQLite snapshot of a project's semantic index.

Holds the Span Store records and the Vector Index entries so a session
can resume without re-embedding the project.  A snapshot is tied to the
model version and vector dimension it was written with; loading it under
a different model discards it.

Storage: ``<project>/.semantic_index/index.db``
"""

from __future__ import annotations

import json
import logging
import os
import sqlite3
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Optional

import numpy as np

from ..models import CodeSpan, IndexEntry, ProjectFile, SpanKind
from .span_store import FileRecord, SpanStore
from .vector_index import VectorIndex

logger = logging.getLogger(__name__)

DEFAULT_STATE_DIR = ".semantic_index"
DB_FILENAME = "index.db"

_SCHEMA = """
CREATE TABLE IF NOT EXISTS meta (
    key     TEXT PRIMARY KEY,
    value   TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS files (
    path                TEXT    PRIMARY KEY,
    size                INTEGER NOT NULL DEFAULT 0,
    modified_at         REAL    NOT NULL DEFAULT 0.0,
    file_type           TEXT    NOT NULL DEFAULT '',
    last_seen_version   INTEGER NOT NULL DEFAULT 0,
    fully_indexed       INTEGER NOT NULL DEFAULT 1,
    version             INTEGER NOT NULL DEFAULT 0
);

CREATE TABLE IF NOT EXISTS spans (
    file_path     TEXT    NOT NULL REFERENCES files(path) ON DELETE CASCADE,
    start_line    INTEGER NOT NULL,
    end_line      INTEGER NOT NULL,
    span_kind     TEXT    NOT NULL,
    name          TEXT    NOT NULL DEFAULT '',
    language      TEXT    NOT NULL DEFAULT '',
    content       TEXT    NOT NULL,
    dependencies  TEXT    NOT NULL DEFAULT '[]',
    PRIMARY KEY (file_path, start_line)
);

CREATE TABLE IF NOT EXISTS entries (
    entry_id            TEXT    PRIMARY KEY,
    embedding_id        TEXT    NOT NULL,
    file_path           TEXT    NOT NULL,
    start_line          INTEGER NOT NULL,
    span_kind           TEXT    NOT NULL,
    last_seen_version   INTEGER NOT NULL DEFAULT 0,
    vector              BLOB    NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_entries_file ON entries(file_path);
"""


def _vec_to_bytes(vec: np.ndarray) -> bytes:
    return np.asarray(vec, dtype=np.float32).tobytes()


def _bytes_to_vec(buf: bytes) -> np.ndarray:
    return np.frombuffer(buf, dtype=np.float32).copy()


@dataclass
class Snapshot:
    """Everything needed to rebuild an in-memory index."""

    model_version: str
    dimension: int
    version: int
    listing_version: int = 0
    records: list[FileRecord] = field(default_factory=list)
    entries: list[IndexEntry] = field(default_factory=list)
    saved_at: float = 0.0


class SnapshotStore:
    """
    SQLite-backed snapshot of one project's index.

    Parameters
    ----------
    db_path:
        Path to the SQLite database file.  Will be created if absent.
    project_root:
        Absolute project path recorded in the snapshot's metadata.
    """

    def __init__(self, db_path: str, project_root: str = "") -> None:
        self._db_path = db_path
        self._project_root = os.path.abspath(project_root) if project_root else ""
        os.makedirs(os.path.dirname(os.path.abspath(db_path)), exist_ok=True)
        self._init_db()

    @classmethod
    def for_project(
        cls,
        project_root: str,
        state_dir: str = DEFAULT_STATE_DIR,
    ) -> "SnapshotStore":
        """Open the snapshot stored under *project_root*/*state_dir*."""
        root = os.path.abspath(project_root)
        return cls(os.path.join(root, state_dir, DB_FILENAME), project_root=root)

    @property
    def db_path(self) -> str:
        return self._db_path

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    @contextmanager
    def _connect(self):
        """Yield a connected SQLite connection with WAL mode for concurrency."""
        conn = sqlite3.connect(self._db_path, timeout=10)
        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA foreign_keys=ON")
        conn.row_factory = sqlite3.Row
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def _init_db(self) -> None:
        with self._connect() as conn:
            conn.executescript(_SCHEMA)

    @staticmethod
    def _read_meta(conn: sqlite3.Connection) -> dict[str, str]:
        rows = conn.execute("SELECT key, value FROM meta").fetchall()
        return {r["key"]: r["value"] for r in rows}

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def save(
        self,
        span_store: SpanStore,
        index: VectorIndex,
        version: int,
        listing_version: int = 0,
    ) -> None:
        """
        Replace the stored snapshot with the current in-memory state.

        Parameters
        ----------
        span_store:
            Source of file metadata and spans.
        index:
            Source of index entries and their vectors.
        version:
            Last ingestion version of the pipeline.
        listing_version:
            Number of file listings the pipeline has recorded.
        """
        t0 = time.perf_counter()
        records = span_store.records()
        entries = index.entries()
        with self._connect() as conn:
            conn.execute("DELETE FROM entries")
            conn.execute("DELETE FROM spans")
            conn.execute("DELETE FROM files")
            conn.execute("DELETE FROM meta")
            conn.executemany(
                "INSERT INTO meta (key, value) VALUES (?, ?)",
                [
                    ("model_version", index.model_version),
                    ("dimension", str(index.dimension)),
                    ("version", str(version)),
                    ("listing_version", str(listing_version)),
                    ("project_root", self._project_root),
                    ("saved_at", repr(time.time())),
                ],
            )
            conn.executemany(
                "INSERT INTO files (path, size, modified_at, file_type, "
                "last_seen_version, fully_indexed, version) "
                "VALUES (?, ?, ?, ?, ?, ?, ?)",
                [
                    (
                        r.file.path, r.file.size, r.file.modified_at, r.file.file_type,
                        r.file.last_seen_version, int(r.file.fully_indexed), r.version,
                    )
                    for r in records
                ],
            )
            conn.executemany(
                "INSERT INTO spans (file_path, start_line, end_line, span_kind, "
                "name, language, content, dependencies) "
                "VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
                [
                    (
                        s.file_path, s.start_line, s.end_line, s.span_kind.value,
                        s.name, s.language, s.content, json.dumps(list(s.dependencies)),
                    )
                    for r in records
                    for s in r.spans
                ],
            )
            conn.executemany(
                "INSERT INTO entries (entry_id, embedding_id, file_path, start_line, "
                "span_kind, last_seen_version, vector) VALUES (?, ?, ?, ?, ?, ?, ?)",
                [
                    (
                        e.entry_id, e.embedding_id, e.file_path, e.start_line,
                        e.span_kind.value, e.last_seen_version, _vec_to_bytes(e.vector),
                    )
                    for e in entries
                ],
            )
        logger.info(
            "[snapshot] Saved %d files, %d entries to %s in %.1fms",
            len(records), len(entries), self._db_path,
            (time.perf_counter() - t0) * 1000,
        )

    def load(self, model_version: str, dimension: int) -> Optional[Snapshot]:
        """
        Read the stored snapshot.

        Returns None when nothing was saved yet, or when the snapshot was
        written under another model version or dimension.  In the latter
        case the stale snapshot is cleared.
        """
        with self._connect() as conn:
            meta = self._read_meta(conn)
            if not meta:
                return None
            stored_model = meta.get("model_version", "")
            stored_dim = int(meta.get("dimension", "0"))
            if stored_model != model_version or stored_dim != dimension:
                logger.warning(
                    "[snapshot] Discarding snapshot for model '%s' (dim %d); "
                    "configured model is '%s' (dim %d)",
                    stored_model, stored_dim, model_version, dimension,
                )
                for table in ("entries", "spans", "files", "meta"):
                    conn.execute(f"DELETE FROM {table}")
                return None

            file_rows = conn.execute("SELECT * FROM files ORDER BY path").fetchall()
            span_rows = conn.execute(
                "SELECT * FROM spans ORDER BY file_path, start_line"
            ).fetchall()
            entry_rows = conn.execute("SELECT * FROM entries ORDER BY entry_id").fetchall()

        spans_by_file: dict[str, list[CodeSpan]] = {}
        for r in span_rows:
            spans_by_file.setdefault(r["file_path"], []).append(
                CodeSpan(
                    file_path=r["file_path"],
                    start_line=r["start_line"],
                    end_line=r["end_line"],
                    span_kind=SpanKind.coerce(r["span_kind"]),
                    content=r["content"],
                    dependencies=tuple(json.loads(r["dependencies"])),
                    name=r["name"],
                    language=r["language"],
                )
            )

        records = [
            FileRecord(
                file=ProjectFile(
                    path=r["path"],
                    size=r["size"],
                    modified_at=r["modified_at"],
                    file_type=r["file_type"],
                    last_seen_version=r["last_seen_version"],
                    fully_indexed=bool(r["fully_indexed"]),
                ),
                spans=tuple(spans_by_file.get(r["path"], ())),
                version=r["version"],
            )
            for r in file_rows
        ]
        entries = [
            IndexEntry(
                entry_id=r["entry_id"],
                embedding_id=r["embedding_id"],
                vector=_bytes_to_vec(r["vector"]),
                file_path=r["file_path"],
                span_kind=SpanKind.coerce(r["span_kind"]),
                last_seen_version=r["last_seen_version"],
                start_line=r["start_line"],
            )
            for r in entry_rows
        ]
        return Snapshot(
            model_version=stored_model,
            dimension=stored_dim,
            version=int(meta.get("version", "0")),
            listing_version=int(meta.get("listing_version", "0")),
            records=records,
            entries=entries,
            saved_at=float(meta.get("saved_at", "0")),
        )

    def clear(self) -> None:
        """Delete the stored snapshot."""
        with self._connect() as conn:
            for table in ("entries", "spans", "files", "meta"):
                conn.execute(f"DELETE FROM {table}")

    def stats(self) -> dict:
        """
        Return aggregate statistics about the stored snapshot.

        Returns
        -------
        dict
            Keys: file_count, span_count, entry_count, model_version,
            version, saved_at.
        """
        with self._connect() as conn:
            meta = self._read_meta(conn)
            file_count = conn.execute("SELECT COUNT(*) FROM files").fetchone()[0]
            span_count = conn.execute("SELECT COUNT(*) FROM spans").fetchone()[0]
            entry_count = conn.execute("SELECT COUNT(*) FROM entries").fetchone()[0]
        return {
            "file_count": file_count,
            "span_count": span_count,
            "entry_count": entry_count,
            "model_version": meta.get("model_version", ""),
            "version": int(meta.get("version", "0")),
            "saved_at": float(meta.get("saved_at", "0")),
        }
