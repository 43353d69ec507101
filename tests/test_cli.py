"""Tests for the `semantic-index` command-line interface."""

import hashlib
import os
from unittest.mock import patch

import pytest


class _FakeEmbedder:
    model_version = "fake:v1"

    def __call__(self, text, model_version):
        digest = hashlib.sha256(text.encode("utf-8")).digest()
        return [b / 255.0 + 0.01 for b in digest[:4]]


def _extractor(root):
    from semantic_index.models import CodeSpan

    def extract(rel_path):
        with open(os.path.join(root, rel_path), encoding="utf-8") as fh:
            text = fh.read()
        return [CodeSpan(rel_path, 1, text.count("\n") + 2, "function", text,
                         name=os.path.splitext(os.path.basename(rel_path))[0])]

    return extract


@pytest.fixture
def indexed_project(tmp_path, monkeypatch):
    from semantic_index.config import Config
    from semantic_index.session import ProjectSession
    (tmp_path / ".semantic_index.yaml").write_text(
        "embedding_dimension: 4\nmodel_version: 'fake:v1'\n", encoding="utf-8",
    )
    (tmp_path / "a.py").write_text("def a():\n    return 'a'\n")
    (tmp_path / "b.py").write_text("def b():\n    return 'b'\n")
    root = str(tmp_path)
    with ProjectSession(root, config=Config.load(project_root=root),
                        embed_fn=_FakeEmbedder(), extractor=_extractor(root)) as session:
        session.index_project()
    monkeypatch.chdir(tmp_path)
    with patch("semantic_index.session.create_embedder", return_value=_FakeEmbedder()):
        yield root


class TestCli:
    def test_status(self, indexed_project, capsys):
        from semantic_index.cli import main
        main(["status"])
        out = capsys.readouterr().out
        assert "Semantic Index Status" in out
        assert "fake:v1" in out
        assert "files" in out

    def test_status_without_index(self, tmp_path, monkeypatch, capsys):
        from semantic_index.cli import main
        monkeypatch.chdir(tmp_path)
        main(["status"])
        assert "No semantic index found" in capsys.readouterr().out

    def test_search(self, indexed_project, capsys):
        from semantic_index.cli import main
        main(["search", "def a():\n    return 'a'\n", "--top-k", "1"])
        out = capsys.readouterr().out
        assert "a.py:1-" in out
        assert "b.py" not in out

    def test_search_without_index_exits(self, tmp_path, monkeypatch):
        from semantic_index.cli import main
        monkeypatch.chdir(tmp_path)
        with pytest.raises(SystemExit) as info:
            main(["search", "anything"])
        assert info.value.code == 1

    def test_related(self, indexed_project, capsys):
        from semantic_index.cli import main
        main(["related", "a.py"])
        out = capsys.readouterr().out
        assert "b.py" in out

    def test_related_unknown_file(self, indexed_project, capsys):
        from semantic_index.cli import main
        with pytest.raises(SystemExit) as info:
            main(["related", "missing.py"])
        assert info.value.code == 1
        assert "not indexed" in capsys.readouterr().err

    def test_reset(self, indexed_project, capsys):
        from semantic_index.cli import main
        main(["reset"])
        main(["status"])
        assert "No semantic index found" in capsys.readouterr().out

    def test_requires_command(self):
        from semantic_index.cli import main
        with pytest.raises(SystemExit):
            main([])
