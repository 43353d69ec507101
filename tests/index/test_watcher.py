"""
Unit tests for semantic_index.index.watcher

Watchdog events are simulated with MagicMock; no observer thread is
started except in the lifecycle test.
"""

from __future__ import annotations

import os
import time
from unittest.mock import MagicMock


def _event(src, dest=None, is_directory=False):
    ev = MagicMock()
    ev.src_path = src
    ev.dest_path = dest
    ev.is_directory = is_directory
    return ev


def _extractor(rel_path):
    from semantic_index.models import CodeSpan
    return [CodeSpan(rel_path, 1, 2, "function", f"# {rel_path}")]


def _reading_extractor(root):
    from semantic_index.models import CodeSpan

    def extract(rel_path):
        text = (root / rel_path).read_text()
        return [CodeSpan(rel_path, 1, 2, "other", text)]

    return extract


def _handler(tmp_path, submitted, debounce=0.0):
    from semantic_index.index.watcher import FileChangeHandler
    return FileChangeHandler(submitted.append, str(tmp_path), _extractor,
                             debounce_seconds=debounce)


class TestFileChangeHandler:
    def test_modified_file_submits_file_changed(self, tmp_path):
        from semantic_index.models import FileChanged
        (tmp_path / "src").mkdir()
        target = tmp_path / "src" / "mod.py"
        target.write_text("x = 1\n")
        submitted = []
        _handler(tmp_path, submitted).on_modified(_event(str(target)))
        assert len(submitted) == 1
        event = submitted[0]
        assert isinstance(event, FileChanged)
        assert event.path == "src/mod.py"
        assert event.file_type == "py"
        assert event.size == target.stat().st_size
        assert event.spans[0].file_path == "src/mod.py"

    def test_deleted_file_submits_file_removed(self, tmp_path):
        from semantic_index.models import FileRemoved
        submitted = []
        _handler(tmp_path, submitted).on_deleted(_event(str(tmp_path / "gone.py")))
        assert submitted == [FileRemoved("gone.py")]

    def test_move_removes_source_and_adds_destination(self, tmp_path):
        from semantic_index.models import FileChanged, FileRemoved
        dest = tmp_path / "new.py"
        dest.write_text("y = 2\n")
        submitted = []
        _handler(tmp_path, submitted).on_moved(_event(str(tmp_path / "old.py"), str(dest)))
        assert submitted[0] == FileRemoved("old.py")
        assert isinstance(submitted[1], FileChanged)
        assert submitted[1].path == "new.py"

    def test_ignores_directories_skip_dirs_and_extensions(self, tmp_path):
        submitted = []
        handler = _handler(tmp_path, submitted)
        handler.on_modified(_event(str(tmp_path / "pkg"), is_directory=True))
        handler.on_modified(_event(str(tmp_path / "node_modules" / "x.js")))
        handler.on_modified(_event(str(tmp_path / "notes.txt")))
        handler.on_deleted(_event(str(tmp_path / ".git" / "HEAD.py")))
        assert submitted == []

    def test_rapid_saves_submit_final_content(self, tmp_path):
        from semantic_index.index.watcher import FileChangeHandler
        target = tmp_path / "a.py"
        submitted = []
        handler = FileChangeHandler(submitted.append, str(tmp_path),
                                    _reading_extractor(tmp_path), debounce_seconds=0.05)
        target.write_text("v1\n")
        handler.on_modified(_event(str(target)))
        target.write_text("v2\n")
        handler.on_modified(_event(str(target)))

        deadline = time.monotonic() + 5.0
        while not submitted and time.monotonic() < deadline:
            time.sleep(0.01)
        time.sleep(0.2)
        assert len(submitted) == 1
        assert submitted[0].spans[0].content == "v2\n"
        assert handler.pending == []

    def test_pending_changes_wait_for_quiet_period(self, tmp_path):
        from semantic_index.index.watcher import FileChangeHandler
        target = tmp_path / "a.py"
        submitted = []
        handler = FileChangeHandler(submitted.append, str(tmp_path),
                                    _reading_extractor(tmp_path), debounce_seconds=60.0)
        target.write_text("v1\n")
        handler.on_modified(_event(str(target)))
        target.write_text("v2\n")
        handler.on_modified(_event(str(target)))
        assert submitted == []
        assert handler.pending == ["a.py"]

        handler.flush_pending()
        assert [e.spans[0].content for e in submitted] == ["v2\n"]
        assert handler.pending == []

    def test_delete_cancels_pending_change(self, tmp_path):
        from semantic_index.models import FileRemoved
        target = tmp_path / "a.py"
        target.write_text("a = 1\n")
        submitted = []
        handler = _handler(tmp_path, submitted, debounce=60.0)
        handler.on_modified(_event(str(target)))
        target.unlink()
        handler.on_deleted(_event(str(target)))
        handler.flush_pending()
        assert submitted == [FileRemoved("a.py")]

    def test_extractor_failure_is_logged_not_raised(self, tmp_path):
        from semantic_index.index.watcher import FileChangeHandler
        target = tmp_path / "a.py"
        target.write_text("a = 1\n")
        submitted = []

        def _broken(rel_path):
            raise SyntaxError("bad file")

        handler = FileChangeHandler(submitted.append, str(tmp_path), _broken,
                                    debounce_seconds=0.0)
        handler.on_modified(_event(str(target)))
        assert submitted == []

    def test_outside_project_ignored(self, tmp_path):
        submitted = []
        handler = _handler(tmp_path / "project", submitted)
        handler.on_deleted(_event(str(tmp_path / "elsewhere.py")))
        assert submitted == []


class TestHelpers:
    def test_iter_project_files_skips_ignored(self, tmp_path):
        from semantic_index.index.watcher import iter_project_files
        (tmp_path / "src").mkdir()
        (tmp_path / "src" / "b.py").write_text("")
        (tmp_path / "a.py").write_text("")
        (tmp_path / "README.md").write_text("")
        (tmp_path / "__pycache__").mkdir()
        (tmp_path / "__pycache__" / "c.py").write_text("")
        (tmp_path / ".hidden").mkdir()
        (tmp_path / ".hidden" / "d.py").write_text("")
        assert sorted(iter_project_files(str(tmp_path))) == ["a.py", "src/b.py"]

    def test_build_change_event_missing_file(self, tmp_path):
        from semantic_index.index.watcher import build_change_event
        from semantic_index.models import FileRemoved
        extractor = MagicMock()
        event = build_change_event(str(tmp_path), "missing.py", extractor)
        assert event == FileRemoved("missing.py")
        extractor.assert_not_called()


def test_project_watcher_start_stop(tmp_path):
    from semantic_index.index.watcher import ProjectWatcher
    watcher = ProjectWatcher(MagicMock(), str(tmp_path), _extractor)
    watcher.start()
    try:
        assert watcher.is_running
    finally:
        watcher.stop()
    assert not watcher.is_running
    assert os.path.isdir(str(tmp_path))


def test_project_watcher_stop_submits_pending_changes(tmp_path):
    from semantic_index.index.watcher import ProjectWatcher
    target = tmp_path / "a.py"
    target.write_text("a = 1\n")
    submitted = []
    watcher = ProjectWatcher(submitted.append, str(tmp_path), _extractor,
                             debounce_seconds=60.0)
    watcher.handler.on_modified(_event(str(target)))
    assert submitted == []
    watcher.start()
    watcher.stop()
    assert [e.path for e in submitted] == ["a.py"]
