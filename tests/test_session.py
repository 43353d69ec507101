"""
Integration tests for semantic_index.session.ProjectSession

Runs the full stack against a temporary project with a fake embedder and
a one-span-per-file extractor.
"""

from __future__ import annotations

import hashlib
import os
import threading

import numpy as np
import pytest


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

class _FakeEmbedder:
    def __init__(self, model_version="fake:v1", dim=4):
        self.model_version = model_version
        self.dim = dim
        self.calls: list[str] = []
        self._lock = threading.Lock()

    def __call__(self, text, model_version):
        with self._lock:
            self.calls.append(text)
        digest = hashlib.sha256(text.encode("utf-8")).digest()
        return [b / 255.0 + 0.01 for b in digest[: self.dim]]


def _make_extractor(root):
    from semantic_index.models import CodeSpan

    def extractor(rel_path):
        with open(os.path.join(root, rel_path), encoding="utf-8") as fh:
            text = fh.read()
        lines = text.count("\n") + 1
        return [CodeSpan(rel_path, 1, lines + 1, "function", text, language="python")]

    return extractor


def _project(tmp_path):
    (tmp_path / "src").mkdir()
    (tmp_path / "src" / "alpha.py").write_text("def alpha():\n    return 1\n")
    (tmp_path / "src" / "beta.py").write_text("def beta():\n    return 2\n")
    (tmp_path / "gamma.py").write_text("class Gamma:\n    pass\n")
    return str(tmp_path)


def _config(**extra):
    from semantic_index.config import Config
    data = {"embedding_dimension": 4, "max_workers": 2}
    data.update(extra)
    return Config(data)


def _session(root, embedder=None, **config):
    from semantic_index.session import ProjectSession
    return ProjectSession(root, config=_config(**config), embed_fn=embedder or _FakeEmbedder(),
                          extractor=_make_extractor(root))


# ---------------------------------------------------------------------------
# Tests
# ---------------------------------------------------------------------------

class TestProjectSession:
    def test_index_and_search(self, tmp_path):
        root = _project(tmp_path)
        with _session(root) as session:
            session.index_project()
            status = session.index_status()
            response = session.search_code("def alpha():\n    return 1\n", top_k=1)
        assert status.files_indexed == 3
        assert status.spans_indexed == 3
        assert response.ok
        assert response[0].file_path == "src/alpha.py"
        assert response[0].similarity == pytest.approx(1.0)

    def test_snapshot_restores_without_reembedding(self, tmp_path):
        root = _project(tmp_path)
        embedder = _FakeEmbedder()
        with _session(root, embedder) as session:
            session.index_project()
            before = [(r.entry_id, round(r.score, 6))
                      for r in session.search_code("class Gamma:\n    pass\n", top_k=3)]
        assert os.path.isfile(os.path.join(root, ".semantic_index", "index.db"))

        embedder2 = _FakeEmbedder()
        with _session(root, embedder2) as session:
            assert session.index_status().files_indexed == 3
            assert session.index_status().last_ingestion_version > 0
            # the embedding cache is not persisted; only the query is computed
            after = [(r.entry_id, round(r.score, 6))
                     for r in session.search_code("class Gamma:\n    pass\n", top_k=3)]
            assert embedder2.calls == ["class Gamma:\n    pass\n"]
            report = session.index_project()
        assert after == before
        assert report.removed_files == []

    def test_vanished_file_removed_on_rescan(self, tmp_path):
        root = _project(tmp_path)
        with _session(root) as session:
            session.index_project()
            os.remove(os.path.join(root, "gamma.py"))
            report = session.index_project()
            files = [f.path for f in session.span_store.all_files()]
        assert report.removed_files == ["gamma.py"]
        assert files == ["src/alpha.py", "src/beta.py"]

    def test_model_change_discards_snapshot(self, tmp_path):
        root = _project(tmp_path)
        with _session(root) as session:
            session.index_project()
        with _session(root, _FakeEmbedder(model_version="fake:v2")) as session:
            assert session.index_status().files_indexed == 0

    def test_store_code_embedding(self, tmp_path):
        from semantic_index.models import CodeEmbedding, CodeSpan
        root = _project(tmp_path)
        with _session(root) as session:
            span = CodeSpan("src/extra.py", 1, 3, "function", "def extra(): pass")
            stored = session.store_code_embedding(CodeEmbedding(
                id="", span=span, vector=np.array([0.0, 0.0, 1.0, 0.0]),
                model_version="fake:v1",
            ))
            hit = session.index.search([0.0, 0.0, 1.0, 0.0], 1)[0][0]
        assert hit.startswith(stored)

    def test_related_files(self, tmp_path):
        root = _project(tmp_path)
        with _session(root) as session:
            session.index_project()
            related = session.suggest_related_files("src/alpha.py", limit=5)
        assert {f.path for f in related} == {"src/beta.py", "gamma.py"}
        assert all(f.ai_relevance is not None for f in related)

    def test_reset_clears_memory_and_disk(self, tmp_path):
        from semantic_index.index.persistence import SnapshotStore
        root = _project(tmp_path)
        session = _session(root).open()
        session.index_project()
        session.save()
        session.reset()
        assert session.index_status().files_indexed == 0
        assert SnapshotStore.for_project(root).stats()["file_count"] == 0
        session.close(save=False)

    def test_persist_disabled(self, tmp_path):
        root = _project(tmp_path)
        with _session(root, persist=False) as session:
            session.index_project()
        assert not os.path.exists(os.path.join(root, ".semantic_index"))

    def test_requires_extractor(self, tmp_path):
        from semantic_index.errors import SemanticIndexError
        from semantic_index.session import ProjectSession
        session = ProjectSession(str(tmp_path), config=_config(persist=False),
                                 embed_fn=_FakeEmbedder())
        with pytest.raises(SemanticIndexError):
            session.index_project()
        session.pipeline.shutdown()

    def test_sweep_catches_unreported_changes(self, tmp_path):
        root = _project(tmp_path)
        with _session(root, stale_version_lag=0) as session:
            session.index_project()
            os.remove(os.path.join(root, "gamma.py"))
            (tmp_path / "delta.py").write_text("def delta():\n    return 4\n")
            report = session.sweep()
            session.pipeline.wait_idle(timeout=5)
            files = [f.path for f in session.span_store.all_files()]
        assert report.removed_files == ["gamma.py"]
        assert files == ["delta.py", "src/alpha.py", "src/beta.py"]

    def test_watching_runs_periodic_sweep(self, tmp_path):
        from unittest.mock import patch

        from semantic_index.index.pipeline import ReconcileReport
        root = _project(tmp_path)
        ticked = threading.Event()

        def _tick():
            ticked.set()
            return ReconcileReport(version=0)

        with _session(root, reconcile_interval=0.01, persist=False) as session:
            with patch.object(session, "sweep", side_effect=_tick) as sweep:
                session.start_watching()
                try:
                    assert ticked.wait(timeout=5)
                finally:
                    session.stop_watching()
                calls = sweep.call_count
                ticked.clear()
                assert not ticked.wait(timeout=0.1)
        assert calls >= 1

    def test_sweep_disabled_with_zero_interval(self, tmp_path):
        from unittest.mock import patch
        root = _project(tmp_path)
        with _session(root, reconcile_interval=0, persist=False) as session:
            with patch.object(session, "sweep") as sweep:
                session.start_watching()
                session.stop_watching()
        sweep.assert_not_called()

    def test_queries_do_not_evict_span_embeddings(self, tmp_path):
        root = _project(tmp_path)
        with _session(root, query_cache_capacity=2, persist=False) as session:
            session.index_project()
            cached = len(session.cache)
            for i in range(5):
                session.search_code(f"query number {i}", top_k=1)
            assert len(session.cache) == cached
            assert len(session.query_cache) == 2
            assert session.cache.contains("class Gamma:\n    pass\n", "fake:v1")
