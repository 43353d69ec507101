"""
Unit tests for semantic_index.index.span_store
"""

from __future__ import annotations

import threading

import pytest


def _span(path, start, end, content="pass"):
    from semantic_index.models import CodeSpan
    return CodeSpan(path, start, end, "function", content)


class TestSpanStore:
    def test_upsert_replaces_previous_spans(self):
        from semantic_index.index.span_store import SpanStore
        store = SpanStore()
        store.upsert_file_spans("a.py", [_span("a.py", 1, 3), _span("a.py", 3, 9)], 1)
        store.upsert_file_spans("a.py", [_span("a.py", 2, 4)], 2)
        spans = store.spans_for_file("a.py")
        assert [s.start_line for s in spans] == [2]
        assert store.get_record("a.py").version == 2

    def test_upsert_does_not_touch_listing_version(self):
        from semantic_index.index.span_store import SpanStore
        from semantic_index.models import ProjectFile
        store = SpanStore()
        store.upsert_file_spans("a.py", [], 1, ProjectFile(path="a.py", last_seen_version=3))
        store.upsert_file_spans("a.py", [_span("a.py", 1, 2)], 9)
        assert store.get_record("a.py").file.last_seen_version == 3

    def test_upsert_keeps_metadata_when_not_given(self):
        from semantic_index.index.span_store import SpanStore
        from semantic_index.models import ProjectFile
        store = SpanStore()
        store.upsert_file_spans("a.py", [], 1, ProjectFile(path="a.py", size=42))
        store.upsert_file_spans("a.py", [], 2)
        assert store.get_record("a.py").file.size == 42

    def test_remove_file_and_not_found(self):
        from semantic_index.errors import NotFound
        from semantic_index.index.span_store import SpanStore
        store = SpanStore()
        store.upsert_file_spans("a.py", [_span("a.py", 1, 2)], 1)
        store.remove_file("a.py")
        assert "a.py" not in store
        assert store.all_files() == []
        with pytest.raises(NotFound):
            store.spans_for_file("a.py")
        with pytest.raises(NotFound):
            store.remove_file("a.py")

    def test_all_files_sorted(self):
        from semantic_index.index.span_store import SpanStore
        store = SpanStore()
        for path in ("b.py", "a.py", "c.py"):
            store.upsert_file_spans(path, [], 1)
        assert [f.path for f in store.all_files()] == ["a.py", "b.py", "c.py"]

    def test_find_span_and_stats(self):
        from semantic_index.index.span_store import SpanStore
        store = SpanStore()
        store.upsert_file_spans("a.py", [_span("a.py", 1, 3), _span("a.py", 5, 9)], 1)
        store.set_fully_indexed("a.py", False)
        assert store.find_span("a.py", 5).end_line == 9
        assert store.find_span("a.py", 4) is None
        assert store.stats() == {
            "file_count": 1, "span_count": 2, "incomplete_files": ["a.py"],
        }

    def test_mark_seen_unknown_returns_false(self):
        from semantic_index.index.span_store import SpanStore
        store = SpanStore()
        assert store.mark_seen("ghost.py", 3) is False
        store.upsert_file_spans("a.py", [], 1)
        assert store.mark_seen("a.py", 7) is True
        assert store.get_record("a.py").file.last_seen_version == 7

    def test_concurrent_reader_never_sees_mixed_spans(self):
        from semantic_index.index.span_store import SpanStore
        store = SpanStore()
        old = [_span("a.py", i * 10 + 1, i * 10 + 5, "old") for i in range(20)]
        new = [_span("a.py", i * 10 + 1, i * 10 + 5, "new") for i in range(20)]
        store.upsert_file_spans("a.py", old, 1)
        mixed: list[set] = []
        stop = threading.Event()

        def _reader():
            while not stop.is_set():
                contents = {s.content for s in store.spans_for_file("a.py")}
                if len(contents) > 1:
                    mixed.append(contents)

        t = threading.Thread(target=_reader)
        t.start()
        for version in range(2, 200):
            store.upsert_file_spans("a.py", new if version % 2 else old, version)
        stop.set()
        t.join()
        assert mixed == []
